import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError
from starlette.concurrency import run_in_threadpool

import catalog
import database
import orders
import payments
from database import ensure_indexes, get_db
from errors import Forbidden, InvalidArgument, ServiceError, Unauthenticated
from notifications import OrderEventBus, get_event_bus, stream_events
from payments import StripeGateway, get_payment_gateway
from schemas import (Account, AccountOut, ApproveBody, AuthOut, CurrentUser, IntentBody, IntentOut, LoginBody,
                     OrderCreate, OrderOut, PayBody, ProductCreate, ProductMeta, ProductOut, ProductPage, ProductUpdate,
                     RegisterBody, RestaurantCreate, RestaurantOut, RestaurantSelfCreate, RestaurantUpdate, StatusBody)
from security import (TOKEN_COOKIE, create_jwt, get_current_user, get_optional_user, hash_password, require_role,
                      resolve_account, verify_password)
from settings import Settings, get_settings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("foodorder")


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; API will answer 500 until configured")
    yield


app = FastAPI(title="Food Ordering API", lifespan=lifespan)
app.state.event_bus = OrderEventBus()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------- Error mapping ----------------------
@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())[1:])
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"detail": "; ".join(parts) or "Invalid request"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


# ---------------------- Auth ----------------------
def _account_out(doc) -> dict:
    return {"id": str(doc["_id"]), "name": doc["name"], "email": doc["email"], "role": doc["role"]}


@app.post("/auth/register", response_model=AuthOut, status_code=201)
def register(body: RegisterBody, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    email = body.email.lower()
    if db["account"].find_one({"email": email}):
        raise InvalidArgument("Email already in use")
    model = Account(name=body.name.strip(), email=email, password_hash=hash_password(body.password), role=body.role)
    try:
        account_id = database.create_document(db, "account", model)
    except DuplicateKeyError:
        raise InvalidArgument("Email already in use")
    logger.info("Registered %s account %s", body.role, account_id)
    token = create_jwt(settings, account_id, body.role)
    return {"token": token, "user": {"id": account_id, "name": model.name, "email": email, "role": body.role}}


@app.post("/auth/login", response_model=AuthOut)
def login(body: LoginBody, response: Response, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    account = db["account"].find_one({"email": body.email.lower()})
    if not account or not verify_password(body.password, account.get("password_hash", "")):
        raise Unauthenticated("Invalid credentials")
    token = create_jwt(settings, str(account["_id"]), account["role"])
    response.set_cookie(TOKEN_COOKIE, token, httponly=True, samesite="lax",
                        max_age=settings.jwt_expires_days * 24 * 60 * 60)
    return {"token": token, "user": _account_out(account)}


@app.get("/auth/me", response_model=AccountOut)
def me(user: CurrentUser = Depends(get_current_user)):
    return user.model_dump()


# ---------------------- Restaurants ----------------------
@app.post("/restaurants", response_model=RestaurantOut, status_code=201)
def admin_create_restaurant(body: RestaurantCreate, db: Database = Depends(get_db),
                            user: CurrentUser = Depends(require_role("admin"))):
    return catalog.admin_create_restaurant(db, body)


@app.get("/restaurants", response_model=List[RestaurantOut])
def admin_list_restaurants(db: Database = Depends(get_db), user: CurrentUser = Depends(require_role("admin"))):
    return catalog.list_restaurants(db)


@app.get("/restaurants/me", response_model=RestaurantOut)
def get_my_restaurant(db: Database = Depends(get_db), user: CurrentUser = Depends(require_role("merchant"))):
    return catalog.get_my_restaurant(db, user)


@app.post("/restaurants/me", response_model=RestaurantOut, status_code=201)
def create_my_restaurant(body: RestaurantSelfCreate, db: Database = Depends(get_db),
                         user: CurrentUser = Depends(require_role("merchant"))):
    return catalog.merchant_create_restaurant(db, user, body)


@app.put("/restaurants/me", response_model=RestaurantOut)
def update_my_restaurant(body: RestaurantUpdate, db: Database = Depends(get_db),
                         user: CurrentUser = Depends(require_role("merchant"))):
    return catalog.update_my_restaurant(db, user, body)


@app.patch("/restaurants/{restaurant_id}/approve", response_model=RestaurantOut)
def approve_restaurant(restaurant_id: str, body: ApproveBody, db: Database = Depends(get_db),
                       user: CurrentUser = Depends(require_role("admin"))):
    return catalog.set_approval(db, restaurant_id, body.is_approved)


@app.get("/public/restaurants", response_model=List[RestaurantOut])
def public_restaurants(approved: bool = True, with_coords: bool = Query(True, alias="withCoords"),
                       db: Database = Depends(get_db)):
    return catalog.list_public_restaurants(db, approved=approved, with_coords=with_coords)


# ---------------------- Products ----------------------
@app.get("/products", response_model=ProductPage)
def list_products(
    search: Optional[str] = None,
    category: Optional[str] = None,
    categories: Optional[str] = None,
    restaurant_id: Optional[str] = Query(None, alias="restaurantId"),
    mine: bool = False,
    price_min: Optional[float] = Query(None, alias="priceMin"),
    price_max: Optional[float] = Query(None, alias="priceMax"),
    is_available: Optional[bool] = Query(None, alias="isAvailable"),
    page: int = 1,
    limit: int = 20,
    sort: str = "createdAt:desc",
    db: Database = Depends(get_db),
    user: Optional[CurrentUser] = Depends(get_optional_user),
):
    return catalog.list_products(
        db, user, page=page, limit=limit, sort=sort,
        search=search, category=category, categories=categories, restaurant_id=restaurant_id, mine=mine,
        price_min=price_min, price_max=price_max, is_available=is_available,
    )


@app.get("/products/meta", response_model=ProductMeta)
def products_meta(restaurant_id: Optional[str] = Query(None, alias="restaurantId"), search: Optional[str] = None,
                  db: Database = Depends(get_db)):
    return catalog.product_meta(db, restaurant_id=restaurant_id, search=search)


@app.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: str, db: Database = Depends(get_db)):
    return catalog.get_product(db, product_id)


@app.post("/products", response_model=ProductOut, status_code=201)
def create_product(body: ProductCreate, db: Database = Depends(get_db),
                   user: CurrentUser = Depends(require_role("admin", "merchant"))):
    return catalog.create_product(db, user, body)


@app.put("/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, body: ProductUpdate, db: Database = Depends(get_db),
                   user: CurrentUser = Depends(require_role("admin", "merchant"))):
    return catalog.update_product(db, user, product_id, body)


@app.delete("/products/{product_id}")
def delete_product(product_id: str, db: Database = Depends(get_db),
                   user: CurrentUser = Depends(require_role("admin", "merchant"))):
    catalog.delete_product(db, user, product_id)
    return {"ok": True}


# ---------------------- Orders ----------------------
@app.post("/orders", response_model=OrderOut, status_code=201)
def create_order(body: OrderCreate, db: Database = Depends(get_db), bus: OrderEventBus = Depends(get_event_bus),
                 user: CurrentUser = Depends(get_current_user)):
    return orders.create_order(db, bus, user, body)


@app.get("/orders", response_model=List[OrderOut])
def list_orders(status: Optional[str] = None, db: Database = Depends(get_db),
                user: CurrentUser = Depends(get_current_user)):
    return orders.list_orders(db, user, status=status)


@app.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, db: Database = Depends(get_db), user: CurrentUser = Depends(get_current_user)):
    return orders.get_order(db, user, order_id)


@app.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(order_id: str, db: Database = Depends(get_db), bus: OrderEventBus = Depends(get_event_bus),
                 gateway: Optional[StripeGateway] = Depends(get_payment_gateway),
                 user: CurrentUser = Depends(get_current_user)):
    return orders.cancel_order(db, bus, gateway, user, order_id)


@app.post("/orders/{order_id}/pay", response_model=OrderOut)
def pay_order(order_id: str, body: Optional[PayBody] = None, db: Database = Depends(get_db),
              bus: OrderEventBus = Depends(get_event_bus), settings: Settings = Depends(get_settings),
              user: CurrentUser = Depends(get_current_user)):
    transaction_id = body.transaction_id if body else None
    return orders.mark_paid(db, bus, settings, user, order_id, transaction_id)


@app.patch("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(order_id: str, body: StatusBody, db: Database = Depends(get_db),
                        bus: OrderEventBus = Depends(get_event_bus),
                        gateway: Optional[StripeGateway] = Depends(get_payment_gateway),
                        user: CurrentUser = Depends(require_role("admin", "merchant"))):
    return orders.update_status(db, bus, gateway, user, order_id, body.status)


# ---------------------- Merchant dashboard ----------------------
@app.get("/merchant/orders", response_model=List[OrderOut])
def merchant_orders(status: Optional[str] = None, db: Database = Depends(get_db),
                    user: CurrentUser = Depends(require_role("merchant"))):
    return orders.list_merchant_orders(db, user, status=status)


@app.post("/merchant/orders/{order_id}/status", response_model=OrderOut)
def merchant_order_status(order_id: str, body: StatusBody, db: Database = Depends(get_db),
                          bus: OrderEventBus = Depends(get_event_bus),
                          gateway: Optional[StripeGateway] = Depends(get_payment_gateway),
                          user: CurrentUser = Depends(require_role("merchant"))):
    return orders.merchant_update_status(db, bus, gateway, user, order_id, body.status)


@app.get("/merchant/orders/stream")
async def merchant_order_stream(token: Optional[str] = None, db: Database = Depends(get_db),
                                settings: Settings = Depends(get_settings),
                                bus: OrderEventBus = Depends(get_event_bus)):
    """Server-Sent Events stream for merchant dashboards.
    Token comes in the query string since EventSource cannot set headers.
    """
    user = await run_in_threadpool(resolve_account, db, settings, token)
    if user.role != "merchant":
        raise Forbidden("Forbidden")
    rest = await run_in_threadpool(catalog.require_owned_restaurant, db, user)
    return StreamingResponse(
        stream_events(bus, str(rest["_id"]), settings.sse_ping_seconds),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive", "X-Accel-Buffering": "no"},
    )


# ---------------------- Payments ----------------------
@app.post("/payments/create-intent", response_model=IntentOut)
def create_payment_intent(body: IntentBody, db: Database = Depends(get_db),
                          gateway: Optional[StripeGateway] = Depends(get_payment_gateway),
                          settings: Settings = Depends(get_settings),
                          user: CurrentUser = Depends(get_current_user)):
    return payments.create_intent(db, gateway, settings, user, body.order_id)


@app.post("/payments/webhook")
async def stripe_webhook(request: Request, db: Database = Depends(get_db),
                         bus: OrderEventBus = Depends(get_event_bus),
                         gateway: Optional[StripeGateway] = Depends(get_payment_gateway)):
    # signature is computed over the raw bytes, so the body is never parsed first
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    return await run_in_threadpool(payments.handle_webhook, db, bus, gateway, payload, sig_header)


# ---------------------- Misc ----------------------
@app.get("/")
def read_root():
    return {"message": "Food Ordering API"}


@app.get("/health")
def health(settings: Settings = Depends(get_settings)):
    return {
        "ok": True,
        "service": "Food Ordering API",
        "database": "configured" if database.db is not None else "not configured",
        "payments": "configured" if settings.payments_configured else "not configured",
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
