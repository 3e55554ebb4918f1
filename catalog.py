"""
Restaurants and products, scoped by role.

Admins act on any restaurant or product. Merchants own exactly one restaurant
and may only touch products of that restaurant; creating a product also needs
the restaurant to be approved. Everyone may read the catalog.
"""
import logging
import math
import re
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import create_document, get_documents
from errors import FailedPrecondition, Forbidden, InvalidArgument, NotFound
from schemas import (CurrentUser, Product, ProductCreate, ProductUpdate, Restaurant, RestaurantCreate,
                     RestaurantSelfCreate, RestaurantUpdate)
from security import to_object_id

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
CLEARABLE_RESTAURANT_FIELDS = ("lat", "lng")
SORTABLE_FIELDS = {
    "createdAt": "created_at",
    "created_at": "created_at",
    "name": "name",
    "price": "price",
    "category": "category",
}


def serialize(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return doc


# ---------------------- Restaurants ----------------------
def find_owned_restaurant(database: Database, owner_id: str) -> Optional[Dict[str, Any]]:
    return database["restaurant"].find_one({"owner_id": owner_id})


def require_owned_restaurant(database: Database, user: CurrentUser) -> Dict[str, Any]:
    rest = find_owned_restaurant(database, user.id)
    if not rest:
        raise InvalidArgument("Restaurant not found for this owner")
    return rest


def _insert_restaurant(database: Database, model: Restaurant) -> Dict[str, Any]:
    if find_owned_restaurant(database, model.owner_id):
        raise FailedPrecondition("Restaurant already exists for this owner")
    try:
        rid = create_document(database, "restaurant", model)
    except DuplicateKeyError:
        # lost the race against a concurrent create for the same owner
        raise FailedPrecondition("Restaurant already exists for this owner")
    logger.info("Restaurant %s created for owner %s (approved=%s)", rid, model.owner_id, model.is_approved)
    return serialize(database["restaurant"].find_one({"_id": to_object_id(rid)}))


def admin_create_restaurant(database: Database, body: RestaurantCreate) -> Dict[str, Any]:
    owner = database["account"].find_one({"_id": to_object_id(body.owner_id, "ownerId")})
    if not owner:
        raise NotFound("Owner user not found")
    if owner.get("role") != "merchant":
        raise InvalidArgument("Owner must have role=merchant")
    model = Restaurant(name=body.name, owner_id=body.owner_id, is_approved=body.is_approved,
                       address=body.address, lat=body.lat, lng=body.lng)
    return _insert_restaurant(database, model)


def merchant_create_restaurant(database: Database, user: CurrentUser, body: RestaurantSelfCreate) -> Dict[str, Any]:
    # self-service restaurants always wait for admin approval
    model = Restaurant(name=body.name, owner_id=user.id, is_approved=False,
                       address=body.address, lat=body.lat, lng=body.lng)
    return _insert_restaurant(database, model)


def get_my_restaurant(database: Database, user: CurrentUser) -> Dict[str, Any]:
    rest = find_owned_restaurant(database, user.id)
    if not rest:
        raise NotFound("Restaurant not found for this owner")
    return serialize(rest)


def update_my_restaurant(database: Database, user: CurrentUser, body: RestaurantUpdate) -> Dict[str, Any]:
    update = body.model_dump(exclude_unset=True)
    # only the coordinates may be cleared
    update = {k: v for k, v in update.items() if v is not None or k in CLEARABLE_RESTAURANT_FIELDS}
    if not update:
        return get_my_restaurant(database, user)
    updated = database["restaurant"].find_one_and_update(
        {"owner_id": user.id}, {"$set": update}, return_document=ReturnDocument.AFTER)
    if not updated:
        raise NotFound("Restaurant not found for this owner")
    return serialize(updated)


def set_approval(database: Database, restaurant_id: str, is_approved: bool) -> Dict[str, Any]:
    updated = database["restaurant"].find_one_and_update(
        {"_id": to_object_id(restaurant_id)}, {"$set": {"is_approved": is_approved}},
        return_document=ReturnDocument.AFTER)
    if not updated:
        raise NotFound("Restaurant not found")
    logger.info("Restaurant %s approval set to %s", restaurant_id, is_approved)
    return serialize(updated)


def list_restaurants(database: Database) -> List[Dict[str, Any]]:
    result = []
    for rest in get_documents(database, "restaurant", sort=[("created_at", -1)]):
        item = serialize(rest)
        try:
            owner = database["account"].find_one({"_id": to_object_id(item["owner_id"])})
        except InvalidArgument:
            owner = None
        if owner:
            item["owner"] = {"id": str(owner["_id"]), "name": owner["name"],
                             "email": owner["email"], "role": owner["role"]}
        result.append(item)
    return result


def list_public_restaurants(database: Database, approved: bool = True, with_coords: bool = True) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if approved:
        query["is_approved"] = True
    if with_coords:
        query["lat"] = {"$ne": None}
        query["lng"] = {"$ne": None}
    return [serialize(r) for r in get_documents(database, "restaurant", query, sort=[("created_at", -1)])]


# ---------------------- Products ----------------------
def _product_query(
    database: Database,
    user: Optional[CurrentUser],
    search: Optional[str] = None,
    category: Optional[str] = None,
    categories: Optional[str] = None,
    restaurant_id: Optional[str] = None,
    mine: bool = False,
    price_min: Optional[float] = None,
    price_max: Optional[float] = None,
    is_available: Optional[bool] = None,
) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}

    if categories:
        wanted = [c.strip() for c in categories.split(",") if c.strip()]
        if wanted:
            query["category"] = {"$in": wanted}
    elif category:
        query["category"] = category

    if mine and user is not None and user.role == "merchant":
        rest = require_owned_restaurant(database, user)
        query["restaurant_id"] = str(rest["_id"])
    elif restaurant_id:
        to_object_id(restaurant_id, "restaurantId")
        query["restaurant_id"] = restaurant_id

    if price_min is not None or price_max is not None:
        query["price"] = {}
        if price_min is not None:
            query["price"]["$gte"] = price_min
        if price_max is not None:
            query["price"]["$lte"] = price_max

    if is_available is not None:
        query["is_available"] = is_available
    return query


def list_products(
    database: Database,
    user: Optional[CurrentUser],
    page: int = 1,
    limit: int = 20,
    sort: str = "createdAt:desc",
    **filters: Any,
) -> Dict[str, Any]:
    query = _product_query(database, user, **filters)

    field, _, direction = sort.partition(":")
    if field not in SORTABLE_FIELDS:
        raise InvalidArgument(f"Cannot sort by {field}")
    sort_spec = [(SORTABLE_FIELDS[field], -1 if direction.lower() == "desc" else 1), ("_id", 1)]

    page = max(page, 1)
    limit = min(max(limit, 1), MAX_PAGE_SIZE)
    total = database["product"].count_documents(query)
    cursor = database["product"].find(query).sort(sort_spec).skip((page - 1) * limit).limit(limit)
    return {
        "items": [serialize(p) for p in cursor],
        "pagination": {"total": total, "page": page, "pages": math.ceil(total / limit), "limit": limit},
    }


def product_meta(database: Database, restaurant_id: Optional[str] = None, search: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if restaurant_id:
        query["restaurant_id"] = restaurant_id
    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}
    categories = sorted(c for c in database["product"].distinct("category", query) if c)
    prices = [p["price"] for p in database["product"].find(query, {"price": 1})]
    price = {"min": min(prices), "max": max(prices)} if prices else {"min": 0, "max": 0}
    return {"categories": categories, "price": price}


def get_product(database: Database, product_id: str) -> Dict[str, Any]:
    doc = database["product"].find_one({"_id": to_object_id(product_id)})
    if not doc:
        raise NotFound("Product not found")
    return serialize(doc)


def create_product(database: Database, user: CurrentUser, body: ProductCreate) -> Dict[str, Any]:
    if user.role == "admin":
        if not body.restaurant_id:
            raise InvalidArgument("restaurantId is required for admin create")
        rest = database["restaurant"].find_one({"_id": to_object_id(body.restaurant_id, "restaurantId")})
        if not rest:
            raise NotFound("Restaurant not found")
    elif user.role == "merchant":
        rest = require_owned_restaurant(database, user)
        if not rest.get("is_approved"):
            raise Forbidden("Restaurant not approved yet")
    else:
        raise Forbidden("Forbidden")

    model = Product(
        restaurant_id=str(rest["_id"]),
        name=body.name.strip(),
        price=body.price,
        category=body.category or "general",
        image_url=body.image_url,
        description=body.description,
        is_available=body.is_available,
    )
    pid = create_document(database, "product", model)
    return get_product(database, pid)


def _mutable_product(database: Database, user: CurrentUser, product_id: str) -> Dict[str, Any]:
    current = database["product"].find_one({"_id": to_object_id(product_id)})
    if not current:
        raise NotFound("Product not found")
    if user.role == "admin":
        return current
    if user.role == "merchant":
        # approval is only checked on create; owners keep editing existing items
        rest = require_owned_restaurant(database, user)
        if current.get("restaurant_id") != str(rest["_id"]):
            raise Forbidden("Forbidden")
        return current
    raise Forbidden("Forbidden")


def update_product(database: Database, user: CurrentUser, product_id: str, body: ProductUpdate) -> Dict[str, Any]:
    current = _mutable_product(database, user, product_id)
    update = body.model_dump(exclude_unset=True, exclude_none=True)
    if "name" in update:
        update["name"] = update["name"].strip()
    if update:
        database["product"].update_one({"_id": current["_id"]}, {"$set": update})
    return get_product(database, product_id)


def delete_product(database: Database, user: CurrentUser, product_id: str) -> None:
    current = _mutable_product(database, user, product_id)
    database["product"].delete_one({"_id": current["_id"]})
