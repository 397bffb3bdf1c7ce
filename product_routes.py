import logging
import math
import re
from typing import Any, List, Optional

from fastapi import APIRouter, Depends, File, Response, UploadFile
from pydantic import BaseModel, ValidationError

import uploads
from auth import get_current_user, require_admin
from database import get_db, paginate, serialize_doc, utcnow
from errors import create_error
from products import (
    checkout_url,
    creator_stats,
    find_owned_product,
    find_public_product,
    insert_product,
    owner_view,
    platform_stats,
    products,
    public_view,
    record_view,
    scoped,
    soft_delete,
    toggle_published,
    update_product,
)
from schemas import DigitalProduct

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/digital-products", tags=["digital-products"])

MAX_PRICE = 99999


class ProductIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    price: Optional[Any] = None
    type: Optional[str] = None
    features: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    published: Optional[bool] = None


def _parse_price(value) -> float:
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise create_error(400, "Price must be a valid positive number")
    if math.isnan(price) or price < 0:
        raise create_error(400, "Price must be a valid positive number")
    if price > MAX_PRICE:
        raise create_error(400, f"Price cannot exceed {MAX_PRICE}")
    return price


def _clean_list(values: Optional[List[str]]) -> List[str]:
    return [v.strip() for v in values or [] if v and v.strip()]


def _validation_message(exc: ValidationError) -> str:
    return ". ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )


def _category_filter(category: Optional[str]) -> Optional[str]:
    if not category or category == "all":
        return None
    return category[:1].upper() + category[1:]


def _owned_or_404(product_id: str, user: dict) -> dict:
    product = find_owned_product(product_id, user["_id"])
    if not product:
        raise create_error(404, "Product not found")
    return product


# -----------------
# Creator routes
# -----------------

@router.post("", status_code=201)
def create_product(payload: ProductIn, user: dict = Depends(get_current_user)):
    name = (payload.name or "").strip()
    description = (payload.description or "").strip()
    if not name or not description or payload.price in (None, ""):
        raise create_error(400, "Name, description, and price are required")
    price = _parse_price(payload.price)

    try:
        product = DigitalProduct(
            name=name,
            description=description,
            category=payload.category or "Course",
            price=price,
            type=payload.type or "digital",
            creator=user["_id"],
            features=_clean_list(payload.features),
            tags=_clean_list(payload.tags),
        )
    except ValidationError as exc:
        raise create_error(400, _validation_message(exc))

    doc = insert_product(product)
    return {"status": "success", "data": {"product": owner_view(doc)}}


@router.get("")
def list_products(
    category: Optional[str] = None,
    search: Optional[str] = None,
    published: Optional[bool] = None,
    page: int = 1,
    limit: int = 10,
    user: dict = Depends(get_current_user),
):
    paging = paginate(page, limit)
    query = scoped({"creator": user["_id"]})
    category = _category_filter(category)
    if category:
        query["category"] = category
    if published is not None:
        query["published"] = published
    if search:
        pattern = re.escape(search)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    cursor = products().find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"])
    items = [owner_view(p) for p in cursor]
    total = products().count_documents(query)

    return {
        "status": "success",
        "results": len(items),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"products": items, "stats": creator_stats(user["_id"])},
    }


@router.get("/admin/all")
def list_all_products(
    category: Optional[str] = None,
    published: Optional[bool] = None,
    page: int = 1,
    limit: int = 20,
    admin: dict = Depends(require_admin),
):
    paging = paginate(page, limit, default_limit=20)
    query = scoped()
    category = _category_filter(category)
    if category:
        query["category"] = category
    if published is not None:
        query["published"] = published

    cursor = products().find(query).sort("created_at", -1).skip(paging["skip"]).limit(paging["limit"])
    items = list(cursor)
    creators = {
        u["_id"]: {"_id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")}
        for u in get_db()["user"].find({"_id": {"$in": list({p["creator"] for p in items})}})
    }
    views = []
    for p in items:
        view = owner_view(p)
        view["creator"] = creators.get(p["creator"], str(p["creator"]))
        views.append(view)
    total = products().count_documents(query)

    return {
        "status": "success",
        "results": len(views),
        "totalResults": total,
        "totalPages": math.ceil(total / paging["limit"]),
        "currentPage": paging["page"],
        "data": {"products": views, "platformStats": platform_stats()},
    }


@router.get("/public/{identifier}")
def get_public_product(identifier: str):
    product = find_public_product(identifier)
    if not product:
        raise create_error(404, "Product not found or not available")

    record_view(product["_id"])
    product["views"] = product.get("views", 0) + 1
    product["last_viewed_at"] = utcnow()
    creator = get_db()["user"].find_one({"_id": product["creator"]}, {"name": 1})
    return {"status": "success", "data": {"product": public_view(product, creator)}}


@router.get("/{product_id}")
def get_product(product_id: str, user: dict = Depends(get_current_user)):
    product = _owned_or_404(product_id, user)
    return {"status": "success", "data": {"product": owner_view(product)}}


@router.put("/{product_id}")
def update_product_route(product_id: str, payload: ProductIn, user: dict = Depends(get_current_user)):
    product = _owned_or_404(product_id, user)
    provided = payload.model_dump(exclude_unset=True)

    changes = {}
    if "name" in provided:
        changes["name"] = (payload.name or "").strip()
    if "description" in provided:
        changes["description"] = (payload.description or "").strip()
    if "price" in provided:
        changes["price"] = _parse_price(payload.price)
    for key in ("category", "type", "published"):
        if key in provided and provided[key] is not None:
            changes[key] = provided[key]
    if "features" in provided:
        changes["features"] = _clean_list(payload.features)
    if "tags" in provided:
        changes["tags"] = _clean_list(payload.tags)

    merged = {k: v for k, v in product.items() if k in DigitalProduct.model_fields}
    merged.update(changes)
    try:
        DigitalProduct(**merged)
    except ValidationError as exc:
        raise create_error(400, _validation_message(exc))

    if changes.get("name") == product.get("name"):
        changes.pop("name")
    updated = update_product(product["_id"], changes)
    return {"status": "success", "data": {"product": owner_view(updated)}}


@router.delete("/{product_id}", status_code=204)
def delete_product(product_id: str, user: dict = Depends(get_current_user)):
    product = _owned_or_404(product_id, user)
    soft_delete(product["_id"])
    return Response(status_code=204)


@router.patch("/{product_id}/toggle-published")
def toggle_product_published(product_id: str, user: dict = Depends(get_current_user)):
    product = _owned_or_404(product_id, user)
    published = toggle_published(product)
    product["published"] = published
    logger.info("Product %s published=%s", product["_id"], published)
    return {
        "status": "success",
        "data": {
            "product": {
                "_id": str(product["_id"]),
                "published": published,
                "checkout_url": checkout_url(product),
            }
        },
    }


# -----------------
# Files
# -----------------

@router.post("/{product_id}/files")
def upload_product_files(
    product_id: str,
    files: List[UploadFile] = File(default=None),
    user: dict = Depends(get_current_user),
):
    product = _owned_or_404(product_id, user)
    new_files = uploads.save_uploads(files, user["_id"])
    try:
        products().update_one(
            {"_id": product["_id"]},
            {"$push": {"files": {"$each": new_files}}, "$set": {"updated_at": utcnow()}},
        )
    except Exception:
        for f in new_files:
            uploads.remove_file(f["path"])
        raise

    total = len(product.get("files", [])) + len(new_files)
    logger.info("Uploaded %d file(s) to product %s", len(new_files), product["_id"])
    return {
        "status": "success",
        "data": {
            "files": [
                dict(serialize_doc(f), icon=uploads.file_icon(f["original_name"])) for f in new_files
            ],
            "totalFiles": total,
        },
    }


@router.delete("/{product_id}/files/{file_id}", status_code=204)
def delete_product_file(product_id: str, file_id: str, user: dict = Depends(get_current_user)):
    product = _owned_or_404(product_id, user)
    file = uploads.find_file(product, file_id)
    if not file:
        raise create_error(404, "File not found")

    # the database entry goes even when the disk delete fails
    uploads.remove_file(file.get("path"))
    products().update_one(
        {"_id": product["_id"]},
        {"$pull": {"files": {"_id": file["_id"]}}, "$set": {"updated_at": utcnow()}},
    )
    return Response(status_code=204)


@router.get("/{product_id}/files/{file_id}/download")
def download_product_file(product_id: str, file_id: str, user: dict = Depends(get_current_user)):
    product = _owned_or_404(product_id, user)
    file = uploads.find_file(product, file_id)
    if not file:
        raise create_error(404, "File not found")
    return uploads.file_response(file)
