"""
Product file uploads

Files are streamed to UPLOAD_ROOT/products/<creatorId>/ and validated
before the product document references them. Whenever a request fails,
every file it wrote is removed again.
"""

import logging
import math
import os
import secrets
import time
from typing import List, Optional

from fastapi import UploadFile
from fastapi.responses import FileResponse

import config
from errors import create_error
from schemas import ProductFile, to_document

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024

ALLOWED_TYPES = {
    "application/pdf": ".pdf",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/msword": ".doc",
    "application/zip": ".zip",
    "application/x-zip-compressed": ".zip",
    "application/vnd.rar": ".rar",
    "application/x-rar-compressed": ".rar",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "text/plain": ".txt",
    "application/epub+zip": ".epub",
    "video/mp4": ".mp4",
    "video/avi": ".avi",
    "video/quicktime": ".mov",
    "audio/mpeg": ".mp3",
    "audio/wav": ".wav",
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
}
ALLOWED_EXTENSIONS = sorted(set(ALLOWED_TYPES.values())) + [".jpeg"]

EXECUTABLE_EXTENSIONS = {".exe", ".bat", ".cmd", ".scr", ".com", ".pif", ".vbs", ".js", ".jar"}

ICONS = {
    ".pdf": "file-text",
    ".doc": "file-text",
    ".docx": "file-text",
    ".txt": "file-text",
    ".zip": "file-archive",
    ".rar": "file-archive",
    ".mp4": "video",
    ".avi": "video",
    ".mov": "video",
    ".mp3": "music",
    ".wav": "music",
    ".jpg": "image",
    ".jpeg": "image",
    ".png": "image",
    ".gif": "image",
    ".ppt": "presentation",
    ".pptx": "presentation",
    ".xls": "spreadsheet",
    ".xlsx": "spreadsheet",
    ".epub": "book",
}

_SIZE_UNITS = ["Bytes", "KB", "MB", "GB", "TB"]


def format_file_size(num_bytes: int) -> str:
    if num_bytes <= 0:
        return "0 Bytes"
    i = min(int(math.floor(math.log(num_bytes, 1024))), len(_SIZE_UNITS) - 1)
    value = ("%.2f" % (num_bytes / 1024 ** i)).rstrip("0").rstrip(".")
    return f"{value} {_SIZE_UNITS[i]}"


def file_icon(filename: str) -> str:
    return ICONS.get(_extension(filename), "file")


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower()


def is_allowed(filename: str, content_type: Optional[str]) -> bool:
    # either a known MIME type or a known extension is enough
    return content_type in ALLOWED_TYPES or _extension(filename) in ALLOWED_EXTENSIONS


def stored_name(original_name: str) -> str:
    base, ext = os.path.splitext(os.path.basename(original_name or "file"))
    base = "".join(c if c.isascii() and c.isalnum() else "_" for c in base)[:50]
    suffix = f"{int(time.time() * 1000)}-{secrets.randbelow(10 ** 9)}"
    return f"{base}_{suffix}{ext.lower()}"


def creator_dir(creator_id) -> str:
    return os.path.join(config.UPLOAD_ROOT, "products", str(creator_id))


def remove_file(path: str) -> None:
    try:
        if path and os.path.exists(path):
            os.remove(path)
            logger.info("Cleaned up file: %s", path)
    except OSError:
        logger.exception("Error cleaning up file %s", path)


def _write(upload: UploadFile, path: str) -> int:
    written = 0
    with open(path, "wb") as out:
        while True:
            chunk = upload.file.read(CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > config.MAX_FILE_SIZE:
                raise create_error(400, f"File too large. Maximum size is {config.MAX_FILE_SIZE // (1024 * 1024)}MB")
            out.write(chunk)
    return written


def save_uploads(uploads: List[UploadFile], creator_id) -> List[dict]:
    """
    Validate and store the uploaded files, returning the sub-documents to
    append to the product's `files`. Raises after removing everything
    written by this call.
    """
    uploads = [u for u in uploads or [] if u is not None and u.filename]
    if not uploads:
        raise create_error(400, "No files uploaded")
    if len(uploads) > config.MAX_FILES:
        raise create_error(400, f"Too many files. Maximum is {config.MAX_FILES} files at once")

    for upload in uploads:
        if not is_allowed(upload.filename, upload.content_type):
            raise create_error(400, f"File type not allowed. Allowed types: {', '.join(ALLOWED_EXTENSIONS)}")

    target_dir = creator_dir(creator_id)
    os.makedirs(target_dir, exist_ok=True)

    written_paths: List[str] = []
    files: List[dict] = []
    try:
        for upload in uploads:
            path = os.path.join(target_dir, stored_name(upload.filename))
            written_paths.append(path)
            written = _write(upload, path)

            expected = upload.size if upload.size is not None else written
            if os.path.getsize(path) != expected:
                raise create_error(400, "File upload corrupted")
            if _extension(upload.filename) in EXECUTABLE_EXTENSIONS:
                raise create_error(400, "Executable files are not allowed")

            files.append(to_document(ProductFile(
                name=os.path.basename(path),
                original_name=upload.filename,
                type=_extension(upload.filename).lstrip("."),
                size=format_file_size(written),
                path=path,
                mime_type=upload.content_type or "application/octet-stream",
            )))
    except Exception:
        for path in written_paths:
            remove_file(path)
        raise
    return files


def find_file(product: dict, file_id: str) -> Optional[dict]:
    for f in product.get("files", []):
        if str(f.get("_id")) == file_id:
            return f
    return None


def file_response(file: dict, no_cache: bool = False) -> FileResponse:
    if not os.path.exists(file.get("path") or ""):
        raise create_error(404, "File not found on server")
    headers = None
    if no_cache:
        headers = {
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Pragma": "no-cache",
            "Expires": "0",
        }
    return FileResponse(
        os.path.abspath(file["path"]),
        media_type=file.get("mime_type") or "application/octet-stream",
        filename=file.get("original_name") or file.get("name"),
        headers=headers,
    )
