"""Global store settings, kept as a single document with a fixed id."""
import logging

from pymongo import ReturnDocument

from database import utcnow
from schemas import Settings, SettingsUpdate

logger = logging.getLogger(__name__)

SETTINGS_ID = "global"


def get_settings(db) -> dict:
    """Return the settings document, creating it with defaults on first use."""
    defaults = Settings().model_dump(by_alias=True)
    defaults["lastUpdatedAt"] = utcnow()
    return db["settings"].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$setOnInsert": defaults},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )


def update_settings(db, changes: SettingsUpdate, admin_id) -> dict:
    get_settings(db)
    update = changes.model_dump(by_alias=True, exclude_unset=True)
    update["lastUpdatedBy"] = admin_id
    update["lastUpdatedAt"] = utcnow()
    doc = db["settings"].find_one_and_update(
        {"_id": SETTINGS_ID},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    logger.info("Settings updated by %s: %s", admin_id, sorted(update))
    return doc


def shipping_cost_for(settings: dict, subtotal: float, method: str) -> float:
    """Shipping charge applied when the client did not quote one."""
    if method == "pickup":
        return 0.0
    if settings.get("freeShippingEnabled") and subtotal >= settings.get("minimumOrderAmount", 0):
        return 0.0
    return float(settings.get("shippingCharge", 0))
