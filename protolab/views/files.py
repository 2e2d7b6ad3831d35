from __future__ import annotations

import os

from flask import Blueprint, abort, current_app, send_file
from itsdangerous import BadSignature, SignatureExpired

from ..security import read_signed_token
from ..uploads import DOWNLOAD_PURPOSE, safe_upload_path

bp = Blueprint("files", __name__, url_prefix="/api/files")


@bp.get("/<token>")
def download(token: str):
    """Serve an uploaded file if the signed link is valid."""
    try:
        data = read_signed_token(DOWNLOAD_PURPOSE, token, current_app.config["DOWNLOAD_TTL_SECONDS"])
    except SignatureExpired:
        abort(410, "Link expired")
    except BadSignature:
        abort(400, "Invalid link")

    path = safe_upload_path(str(data.get("p") or ""))
    if not path:
        abort(400, "Invalid file path")
    if not os.path.isfile(path):
        abort(404, "File not found")
    return send_file(path, as_attachment=True, download_name=str(data.get("n") or os.path.basename(path)))
