"""Bootstrap an admin account: python seed.py <email> <password> [name]"""
import logging
import sys
from datetime import datetime, timezone

from pymongo.database import Database

import database
from security import hash_password

logger = logging.getLogger(__name__)


def create_admin(db: Database, email: str, password: str, name: str = "Admin") -> str:
    """Create the admin, or promote and reset the password of an existing account."""
    email = email.strip().lower()
    existing = db["account"].find_one({"email": email})
    if existing:
        db["account"].update_one(
            {"_id": existing["_id"]},
            {"$set": {"role": "admin", "password_hash": hash_password(password),
                      "updated_at": datetime.now(timezone.utc)}},
        )
        logger.info("Promoted %s to admin", email)
        return str(existing["_id"])
    account_id = database.create_document(db, "account", {
        "name": name,
        "email": email,
        "password_hash": hash_password(password),
        "role": "admin",
    })
    logger.info("Created admin %s", email)
    return account_id


def main(argv=None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) < 2:
        print(__doc__)
        return 2
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    account_id = create_admin(database.get_db(), argv[0], argv[1], argv[2] if len(argv) > 2 else "Admin")
    print(account_id)
    return 0


if __name__ == "__main__":
    sys.exit(main())
