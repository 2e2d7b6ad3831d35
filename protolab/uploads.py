from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional, Tuple

from flask import current_app, url_for
from werkzeug.utils import secure_filename

from .errors import BadRequest
from .security import make_signed_token

logger = logging.getLogger(__name__)

MODEL_EXTS = {".stl", ".obj", ".3mf", ".step", ".stp"}
REFERENCE_EXTS = MODEL_EXTS | {".png", ".jpg", ".jpeg", ".webp", ".gif", ".pdf", ".zip"}

DOWNLOAD_PURPOSE = "downloads"


def read_upload(f, allowed_exts: set, max_bytes: Optional[int] = None) -> Tuple[str, str, bytes]:
    """Return ``(original_name, ext, data)`` or raise ``BadRequest``."""
    if not f or not getattr(f, "filename", ""):
        raise BadRequest("File is required")
    original = f.filename
    name = secure_filename(original) or "upload"
    ext = os.path.splitext(name)[1].lower() or os.path.splitext(original)[1].lower()
    if ext not in allowed_exts:
        raise BadRequest(
            f"Unsupported file type: {ext or 'none'}",
            allowed=sorted(allowed_exts),
        )
    data = f.read()
    if not data:
        raise BadRequest("File is empty")
    limit = max_bytes if max_bytes is not None else current_app.config["MAX_UPLOAD_MB"] * 1024 * 1024
    if len(data) > limit:
        raise BadRequest(f"File too large (max {limit // (1024 * 1024)} MB)")
    return original, ext, data


def store_bytes(kind: str, ext: str, data: bytes) -> str:
    """Write under ``UPLOAD_DIR/<kind>/`` and return the relative path."""
    dst_dir = os.path.join(current_app.config["UPLOAD_DIR"], kind)
    os.makedirs(dst_dir, exist_ok=True)
    new_name = f"{uuid.uuid4().hex}{ext}"
    with open(os.path.join(dst_dir, new_name), "wb") as out:
        out.write(data)
    rel = f"{kind}/{new_name}"
    logger.info("Stored upload %s (%d bytes)", rel, len(data))
    return rel


def save_upload(f, kind: str, allowed_exts: set) -> Dict[str, Any]:
    original, ext, data = read_upload(f, allowed_exts)
    rel = store_bytes(kind, ext, data)
    return {
        "name": original,
        "path": rel,
        "size": len(data),
        "type": getattr(f, "mimetype", None) or "application/octet-stream",
    }


def safe_upload_path(relpath: str) -> Optional[str]:
    """Absolute path inside UPLOAD_DIR, or None on traversal attempts."""
    rel = (relpath or "").replace("\\", "/").lstrip("/")
    if not rel or ".." in rel.split("/"):
        return None
    base = os.path.abspath(current_app.config["UPLOAD_DIR"])
    ap = os.path.abspath(os.path.join(base, rel))
    if not ap.startswith(base + os.sep):
        return None
    return ap


def signed_file_url(relpath: Optional[str], download_name: Optional[str] = None) -> Optional[str]:
    if not relpath:
        return None
    token = make_signed_token(DOWNLOAD_PURPOSE, {"p": relpath, "n": download_name or os.path.basename(relpath)})
    return url_for("files.download", token=token, _external=True)
