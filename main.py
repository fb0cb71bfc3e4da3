import logging
import re
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import EmailStr, Field
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

import config
import database
import inventory
import orders
import settings_store
from auth import (
    PRIVATE_USER_FIELDS,
    create_token,
    get_current_admin,
    get_current_user,
    hash_password,
    is_admin,
    verify_password,
)
from database import create_document, get_db, get_optional_db, parse_object_id, paginate, serialize_doc, utcnow
from errors import (
    AuthenticationError,
    CannotDeleteSelfError,
    DomainRuleError,
    DuplicateProductError,
    EmailNotVerifiedError,
    InvalidIdError,
    InvalidPasswordError,
    NotFoundError,
    PermissionDeniedError,
    ProductNotFoundError,
    ServiceUnavailableError,
    StoreError,
    UserExistsError,
    UserNotFoundError,
    ValidationFailed,
    VerificationError,
)
from notifications import (
    generate_otp,
    get_email_sender,
    send_order_confirmation,
    send_password_reset_code,
    send_verification_code,
)
from schemas import (
    AdminUserUpdate,
    CamelModel,
    CancelOrderRequest,
    OrderCreateRequest,
    OrderStatus,
    OrderStatusUpdate,
    PasswordChange,
    PaymentStatus,
    PaymentStatusUpdate,
    Product,
    ProductUpdate,
    ProfileUpdate,
    SettingsUpdate,
    StockUpdateRequest,
    User,
    UserProfile,
    UserRole,
)
from storage import get_image_storage

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        try:
            database.ensure_indexes(database.db)
        except PyMongoError as e:
            logger.warning("Could not create indexes at startup: %s", e)
    else:
        logger.warning("DATABASE_URL/DATABASE_NAME not set; running without a datastore")
    yield


# App setup
app = FastAPI(title="Storefront API", version="1.0.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.mount(config.UPLOAD_BASE_URL, StaticFiles(directory=config.UPLOAD_DIR, check_dir=False), name="uploads")


# Error mapping

ERROR_STATUS_CODES: dict[type, int] = {
    ValidationFailed: 400,
    InvalidIdError: 400,
    NotFoundError: 404,
    AuthenticationError: 401,
    EmailNotVerifiedError: 401,
    PermissionDeniedError: 403,
    DomainRuleError: 400,
    ServiceUnavailableError: 503,
}


def status_for_error(exc: StoreError) -> int:
    for cls in type(exc).__mro__:
        if cls in ERROR_STATUS_CODES:
            return ERROR_STATUS_CODES[cls]
    return 500


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
    """Map StoreError subclasses to HTTP responses."""
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.title, "code": exc.code, "details": exc.details},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {"field": ".".join(str(p) for p in err["loc"][1:]) or str(err["loc"][0]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"error": ValidationFailed.title, "code": ValidationFailed.code, "details": details},
    )


@app.exception_handler(ConnectionFailure)
async def connection_failure_handler(request: Request, exc: ConnectionFailure) -> JSONResponse:
    logger.error("Datastore unreachable during %s %s: %s", request.method, request.url.path, exc)
    err = ServiceUnavailableError()
    return JSONResponse(
        status_code=503,
        content={"error": err.title, "code": err.code, "details": err.details},
    )


# Request schemas

class RegisterRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    display_name: str = Field(..., min_length=1, max_length=100)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = Field(None, min_length=10, max_length=20)


class VerifyEmailRequest(CamelModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6)


class ResendVerificationRequest(CamelModel):
    email: EmailStr


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: EmailStr


class ResetPasswordRequest(CamelModel):
    email: EmailStr
    otp: str = Field(..., min_length=6, max_length=6)
    new_password: str = Field(..., min_length=6)


def public_user(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "email": user.get("email"),
        "displayName": user.get("displayName"),
        "role": user.get("role", "user"),
        "isAdmin": is_admin(user),
        "profile": user.get("profile", {}),
        "isEmailVerified": user.get("isEmailVerified", False),
    }


def check_otp(code: Optional[str], expires, given: str, what: str) -> None:
    """Raise VerificationError unless ``given`` matches an unexpired stored code."""
    if not code or not expires:
        raise VerificationError("no_code", f"No {what} code found. Please request a new one.")
    if utcnow() > expires:
        raise VerificationError("code_expired", f"{what.capitalize()} code has expired. Please request a new one.")
    if code != given:
        raise VerificationError("invalid_code", f"Invalid {what} code")


# Health

@app.get("/")
def root():
    return {"message": "Storefront API running"}


@app.get("/api/health")
def health():
    response = {
        "backend": "running",
        "database": "not configured",
        "collections": [],
    }
    db = database.db
    if db is not None:
        if database.ping(db):
            response["database"] = "connected"
            try:
                response["collections"] = db.list_collection_names()[:10]
            except PyMongoError as e:
                response["database"] = f"connected but error: {str(e)[:80]}"
        else:
            response["database"] = "unreachable"
    return response


# Auth

@app.post("/api/auth/register", status_code=201)
def register(payload: RegisterRequest, background_tasks: BackgroundTasks, db=Depends(get_db),
             sender=Depends(get_email_sender)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise UserExistsError(email)

    make_admin = db["user"].count_documents({}) == 0 or (config.ADMIN_EMAIL and email == config.ADMIN_EMAIL)
    code = generate_otp()
    user = User(
        email=email,
        password_hash=hash_password(payload.password),
        display_name=payload.display_name.strip(),
        profile=UserProfile(first_name=payload.first_name, last_name=payload.last_name, phone=payload.phone),
        role="admin" if make_admin else "user",
        is_admin=bool(make_admin),
        email_verification_code=code,
        email_verification_expires=utcnow() + timedelta(minutes=config.OTP_TTL_MINUTES),
    )
    try:
        user_id = create_document(db, "user", user)
    except DuplicateKeyError:
        raise UserExistsError(email)

    background_tasks.add_task(send_verification_code, sender, email, code)
    logger.info("Registered user %s (admin=%s)", user_id, bool(make_admin))
    doc = db["user"].find_one({"_id": parse_object_id(user_id)})
    return {
        "success": True,
        "message": "User registered successfully. Please verify your email.",
        "data": {"user": public_user(doc)},
    }


@app.post("/api/auth/verify-email")
def verify_email(payload: VerifyEmailRequest, db=Depends(get_db)):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email})
    if not user:
        raise UserNotFoundError(email)
    if user.get("isEmailVerified"):
        raise VerificationError("already_verified", "Email is already verified")
    check_otp(user.get("emailVerificationCode"), user.get("emailVerificationExpires"), payload.otp, "verification")

    user = db["user"].find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {
            "isEmailVerified": True,
            "emailVerificationCode": None,
            "emailVerificationExpires": None,
            "lastLogin": utcnow(),
            "updatedAt": utcnow(),
        }},
        return_document=ReturnDocument.AFTER,
    )
    return {
        "success": True,
        "message": "Email verified successfully",
        "data": {"user": public_user(user), "token": create_token(user)},
    }


@app.post("/api/auth/resend-verification")
def resend_verification(payload: ResendVerificationRequest, background_tasks: BackgroundTasks,
                        db=Depends(get_db), sender=Depends(get_email_sender)):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email})
    if not user:
        raise UserNotFoundError(email)
    if user.get("isEmailVerified"):
        raise VerificationError("already_verified", "Email is already verified")
    code = generate_otp()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "emailVerificationCode": code,
            "emailVerificationExpires": utcnow() + timedelta(minutes=config.OTP_TTL_MINUTES),
            "updatedAt": utcnow(),
        }},
    )
    background_tasks.add_task(send_verification_code, sender, email, code)
    return {"success": True, "message": "Verification code sent"}


def issue_reset_code(db, user: dict) -> str:
    code = generate_otp()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "passwordResetCode": code,
            "passwordResetExpires": utcnow() + timedelta(minutes=config.OTP_TTL_MINUTES),
            "updatedAt": utcnow(),
        }},
    )
    return code


@app.post("/api/auth/forgot-password")
def forgot_password(payload: ForgotPasswordRequest, background_tasks: BackgroundTasks, db=Depends(get_db),
                    sender=Depends(get_email_sender)):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email, "isActive": True})
    if user:
        code = issue_reset_code(db, user)
        background_tasks.add_task(send_password_reset_code, sender, email, code)
        logger.info("Password reset requested for %s", user["_id"])
    # Same response whether or not the account exists
    return {
        "success": True,
        "message": "If an account with that email exists, a password reset OTP has been sent",
    }


@app.post("/api/auth/reset-password")
def reset_password(payload: ResetPasswordRequest, db=Depends(get_db)):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email, "isActive": True})
    if not user:
        raise UserNotFoundError(email)
    check_otp(user.get("passwordResetCode"), user.get("passwordResetExpires"), payload.otp, "reset")

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {
            "passwordHash": hash_password(payload.new_password),
            "passwordResetCode": None,
            "passwordResetExpires": None,
            "updatedAt": utcnow(),
        }},
    )
    logger.info("Password reset for %s", user["_id"])
    return {"success": True, "message": "Password reset successfully"}


@app.post("/api/auth/resend-reset-otp")
def resend_reset_otp(payload: ForgotPasswordRequest, background_tasks: BackgroundTasks, db=Depends(get_db),
                     sender=Depends(get_email_sender)):
    email = payload.email.lower()
    user = db["user"].find_one({"email": email, "isActive": True})
    if not user:
        raise UserNotFoundError(email)
    code = issue_reset_code(db, user)
    background_tasks.add_task(send_password_reset_code, sender, email, code)
    return {"success": True, "message": "Password reset OTP sent"}


@app.post("/api/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower(), "isActive": True})
    if not user or not verify_password(payload.password, user.get("passwordHash", "")):
        raise AuthenticationError("Invalid credentials")
    if not user.get("isEmailVerified") and not is_admin(user):
        raise EmailNotVerifiedError()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"lastLogin": utcnow()}})
    return {
        "success": True,
        "message": "Login successful",
        "data": {"user": public_user(user), "token": create_token(user)},
    }


@app.get("/api/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return {"user": public_user(current_user)}


@app.put("/api/auth/profile")
@app.put("/api/users/profile")
def update_profile(payload: ProfileUpdate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    changes = payload.to_update()
    changes["updatedAt"] = utcnow()
    user = db["user"].find_one_and_update(
        {"_id": current_user["_id"]},
        {"$set": changes},
        projection=PRIVATE_USER_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise UserNotFoundError(str(current_user["_id"]))
    return {"message": "Profile updated successfully", "data": {"user": public_user(user)}}


@app.post("/api/auth/change-password")
def change_password(payload: PasswordChange, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    user = db["user"].find_one({"_id": current_user["_id"]}, {"passwordHash": 1})
    if not user:
        raise UserNotFoundError(str(current_user["_id"]))
    if not verify_password(payload.current_password, user.get("passwordHash", "")):
        raise InvalidPasswordError()
    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"passwordHash": hash_password(payload.new_password), "updatedAt": utcnow()}},
    )
    logger.info("Password changed for %s", user["_id"])
    return {"message": "Password changed successfully"}


# Products

def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")


def ensure_unique_codes(db, changes: dict, exclude_id=None) -> None:
    for field in ("sku", "barcode"):
        value = changes.get(field)
        if not value:
            continue
        filt = {field: value}
        if exclude_id is not None:
            filt["_id"] = {"$ne": exclude_id}
        if db["product"].find_one(filt):
            raise DuplicateProductError(field, value)


@app.get("/api/products")
def list_products(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                  category: Optional[str] = Query(None, min_length=1, max_length=100),
                  search: Optional[str] = Query(None, min_length=1, max_length=200),
                  min_price: Optional[float] = Query(None, ge=0, alias="minPrice"),
                  max_price: Optional[float] = Query(None, ge=0, alias="maxPrice"),
                  in_stock: Optional[bool] = Query(None, alias="inStock"),
                  status: str = Query("active", pattern="^(active|inactive|out_of_stock|discontinued|all)$"),
                  db=Depends(get_db)):
    filt = {}
    if status != "all":
        filt["status"] = status
    if category:
        filt["category"] = category
    if search:
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        filt["$or"] = [{"name": pattern}, {"description": pattern}, {"category": pattern}]
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["price"] = price_cond
    if in_stock:
        filt["stock"] = {"$gt": 0}

    items, pagination = paginate(db["product"], filt, page, limit, [("analytics.views", -1), ("createdAt", -1)])
    return {"products": [serialize_doc(p) for p in items], "pagination": pagination}


@app.get("/api/products/slug/{slug}")
def get_product_by_slug(slug: str, db=Depends(get_db)):
    product = db["product"].find_one_and_update(
        {"seo.slug": slug},
        {"$inc": {"analytics.views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise ProductNotFoundError(slug)
    return {"product": serialize_doc(product)}


@app.get("/api/products/category/{category}")
def list_category(category: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                  db=Depends(get_db)):
    items, pagination = paginate(db["product"], {"category": category, "status": "active"}, page, limit,
                                 [("analytics.views", -1)])
    return {"products": [serialize_doc(p) for p in items], "category": category, "pagination": pagination}


@app.get("/api/products/search/suggestions")
def search_suggestions(q: str = Query(..., min_length=1, max_length=100), db=Depends(get_db)):
    filt = {"name": {"$regex": re.escape(q.strip()), "$options": "i"}, "status": "active"}
    cursor = db["product"].find(filt, {"name": 1, "category": 1}).sort([("analytics.views", -1)]).limit(10)
    return {"suggestions": [serialize_doc(p) for p in cursor]}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db=Depends(get_db)):
    oid = parse_object_id(product_id, "Product ID")
    product = db["product"].find_one_and_update(
        {"_id": oid},
        {"$inc": {"analytics.views": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if not product:
        raise ProductNotFoundError(product_id)
    return {"product": serialize_doc(product)}


@app.post("/api/products", status_code=201)
def create_product(payload: Product, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    doc = payload.model_dump(by_alias=True, exclude_none=True)
    ensure_unique_codes(db, doc)
    doc.setdefault("seo", {})
    if not doc["seo"].get("slug"):
        doc["seo"]["slug"] = slugify(payload.name)
    doc["status"] = inventory.status_for_stock(doc["stock"], doc["status"])
    product_id = create_document(db, "product", doc)
    logger.info("Product %s created by %s", product_id, admin["_id"])
    product = db["product"].find_one({"_id": parse_object_id(product_id)})
    return {"message": "Product created successfully", "product": serialize_doc(product)}


@app.put("/api/products/{product_id}")
def update_product(product_id: str, payload: ProductUpdate, admin: dict = Depends(get_current_admin),
                   db=Depends(get_db)):
    oid = parse_object_id(product_id, "Product ID")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise ProductNotFoundError(product_id)

    changes = payload.model_dump(by_alias=True, exclude_unset=True)
    ensure_unique_codes(db, changes, exclude_id=oid)
    if "stock" in changes or "status" in changes:
        changes["status"] = inventory.status_for_stock(
            changes.get("stock", product.get("stock", 0)),
            changes.get("status", product.get("status")),
        )
    changes["updatedAt"] = utcnow()
    product = db["product"].find_one_and_update(
        {"_id": oid}, {"$set": changes}, return_document=ReturnDocument.AFTER
    )
    if not product:
        raise ProductNotFoundError(product_id)
    return {"message": "Product updated successfully", "product": serialize_doc(product)}


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db),
                   storage=Depends(get_image_storage)):
    oid = parse_object_id(product_id, "Product ID")
    product = db["product"].find_one_and_delete({"_id": oid})
    if not product:
        raise ProductNotFoundError(product_id)
    if product.get("imageUrl"):
        try:
            storage.delete(product["imageUrl"])
        except OSError as e:
            logger.warning("Failed to delete image %s: %s", product["imageUrl"], e)
    logger.info("Product %s deleted by %s", product_id, admin["_id"])
    return {"message": "Product deleted successfully", "productId": product_id}


@app.patch("/api/products/{product_id}/stock")
def update_stock(product_id: str, payload: StockUpdateRequest, admin: dict = Depends(get_current_admin),
                 db=Depends(get_db)):
    product = inventory.adjust_stock(db, product_id, payload.quantity, payload.operation)
    return {
        "message": "Stock updated successfully",
        "product": {
            "id": str(product["_id"]),
            "name": product.get("name"),
            "stock": product["stock"],
            "status": product["status"],
        },
    }


@app.post("/api/products/{product_id}/image")
def upload_product_image(product_id: str, image: UploadFile = File(...),
                         admin: dict = Depends(get_current_admin), db=Depends(get_db),
                         storage=Depends(get_image_storage)):
    oid = parse_object_id(product_id, "Product ID")
    product = db["product"].find_one({"_id": oid})
    if not product:
        raise ProductNotFoundError(product_id)
    if not (image.content_type or "").startswith("image/"):
        raise ValidationFailed([{"field": "image", "message": "Only image files are allowed"}])
    data = image.file.read(config.MAX_IMAGE_BYTES + 1)
    if len(data) > config.MAX_IMAGE_BYTES:
        raise ValidationFailed([{"field": "image", "message": "Image is too large"}])

    url = storage.save(image.filename or "image", data, image.content_type)
    product = db["product"].find_one_and_update(
        {"_id": oid},
        {"$set": {"imageUrl": url, "images.main": url, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    return {"message": "Image uploaded successfully", "imageUrl": url, "product": serialize_doc(product)}


# Orders

@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreateRequest, background_tasks: BackgroundTasks,
                 user: dict = Depends(get_current_user), db=Depends(get_optional_db),
                 sender=Depends(get_email_sender)):
    order, mocked = orders.create_order(db, user, payload)
    if mocked:
        message = "Order created successfully (mocked - datastore unavailable)"
    else:
        message = "Order created successfully"
        background_tasks.add_task(send_order_confirmation, sender, order)
    return {"success": True, "message": message, "data": {"order": serialize_doc(order)}}


@app.get("/api/orders")
def list_my_orders(page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=50),
                   status: Optional[OrderStatus] = None,
                   payment_status: Optional[PaymentStatus] = Query(None, alias="paymentStatus"),
                   search: Optional[str] = None,
                   user: dict = Depends(get_current_user), db=Depends(get_db)):
    filt = orders.build_order_filter(
        customer_id=user["_id"],
        status=status.value if status else None,
        payment_status=payment_status.value if payment_status else None,
        search=search,
    )
    items, pagination = orders.list_orders(db, filt, page, limit)
    return {"success": True, "data": {"data": items, "pagination": pagination}}


@app.get("/api/orders/admin/all")
def list_all_orders(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
                    status: Optional[str] = None,
                    payment_status: Optional[str] = Query(None, alias="paymentStatus"),
                    search: Optional[str] = None,
                    admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    filt = orders.build_order_filter(status=status, payment_status=payment_status, search=search)
    items, pagination = orders.list_orders(db, filt, page, limit)
    return {"success": True, "data": {"orders": items, "pagination": pagination}}


@app.get("/api/orders/number/{order_number}")
def get_order_by_number(order_number: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    order = orders.get_order_by_number(db, order_number, user)
    return {"order": serialize_doc(order)}


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    order = orders.get_order(db, order_id, user)
    return {"order": serialize_doc(order)}


@app.patch("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelOrderRequest] = None,
                 user: dict = Depends(get_current_user), db=Depends(get_db)):
    reason = payload.reason if payload else None
    order = orders.cancel_order(db, order_id, user, reason)
    return {
        "message": "Order cancelled successfully",
        "order": serialize_doc(orders.order_summary(order, "orderStatus", "cancellationReason")),
    }


@app.patch("/api/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, admin: dict = Depends(get_current_admin),
                        db=Depends(get_db)):
    order = orders.update_order_status(db, order_id, payload.status, admin["_id"], payload.note)
    return {
        "message": "Order status updated successfully",
        "order": serialize_doc(orders.order_summary(order, "orderStatus")),
    }


@app.patch("/api/orders/{order_id}/payment-status")
def update_payment_status(order_id: str, payload: PaymentStatusUpdate, admin: dict = Depends(get_current_admin),
                          db=Depends(get_db)):
    order = orders.update_payment_status(db, order_id, payload.payment_status, admin["_id"], payload.note)
    return {
        "message": "Payment status updated successfully",
        "order": serialize_doc(orders.order_summary(order, "paymentStatus")),
    }


# Users

def build_user_filter(role: Optional[str] = None, is_active: Optional[bool] = None,
                      search: Optional[str] = None) -> dict:
    filt: dict = {}
    if role:
        filt["role"] = role
    if is_active is not None:
        filt["isActive"] = is_active
    if search and search.strip():
        pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
        filt["$or"] = [
            {"email": pattern},
            {"displayName": pattern},
            {"profile.firstName": pattern},
            {"profile.lastName": pattern},
        ]
    return filt


@app.get("/api/users/admin/all")
def list_users(page: int = Query(1, ge=1), limit: int = Query(50, ge=1, le=100),
               role: Optional[UserRole] = None,
               is_active: Optional[bool] = Query(None, alias="isActive"),
               search: Optional[str] = Query(None, max_length=200),
               admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    filt = build_user_filter(role.value if role else None, is_active, search)
    items, pagination = paginate(db["user"], filt, page, limit, [("createdAt", -1)], PRIVATE_USER_FIELDS)
    return {"users": [serialize_doc(u) for u in items], "pagination": pagination}


@app.get("/api/users/admin/{user_id}")
def get_user(user_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    user = db["user"].find_one({"_id": parse_object_id(user_id, "User ID")}, PRIVATE_USER_FIELDS)
    if not user:
        raise UserNotFoundError(user_id)
    return {"user": serialize_doc(user)}


@app.put("/api/users/admin/{user_id}")
def update_user(user_id: str, payload: AdminUserUpdate, admin: dict = Depends(get_current_admin),
                db=Depends(get_db)):
    oid = parse_object_id(user_id, "User ID")
    changes = payload.model_dump(by_alias=True, exclude_none=True)
    changes["updatedAt"] = utcnow()
    user = db["user"].find_one_and_update(
        {"_id": oid},
        {"$set": changes},
        projection=PRIVATE_USER_FIELDS,
        return_document=ReturnDocument.AFTER,
    )
    if not user:
        raise UserNotFoundError(user_id)
    logger.info("User %s updated by %s: %s", user_id, admin["_id"], sorted(changes))
    return {"message": "User updated successfully", "user": serialize_doc(user)}


@app.delete("/api/users/admin/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    oid = parse_object_id(user_id, "User ID")
    if not db["user"].find_one({"_id": oid}, {"_id": 1}):
        raise UserNotFoundError(user_id)
    if oid == admin["_id"]:
        raise CannotDeleteSelfError()
    db["user"].delete_one({"_id": oid})
    logger.info("User %s deleted by %s", user_id, admin["_id"])
    return {"message": "User deleted successfully"}


# Settings

@app.get("/api/settings")
def read_settings(db=Depends(get_db)):
    return {"settings": serialize_doc(settings_store.get_settings(db))}


@app.put("/api/settings")
def write_settings(payload: SettingsUpdate, admin: dict = Depends(get_current_admin), db=Depends(get_db)):
    doc = settings_store.update_settings(db, payload, admin["_id"])
    return {"message": "Settings updated successfully", "settings": serialize_doc(doc)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
