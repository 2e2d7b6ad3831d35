from __future__ import annotations

import math
import os
import re
import struct
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .pricing import PrintProfile

Vertex = Tuple[float, float, float]

SUPPORTED_TYPES = {".stl": "STL", ".obj": "OBJ", ".3mf": "3MF"}

_NUM = r"([-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?)"
_VERTEX_RE = re.compile(r"vertex\s+" + _NUM + r"\s+" + _NUM + r"\s+" + _NUM)

# Rough filament cross-section used for the infill pass (mm2)
INFILL_LINE_SECTION = 0.5
NOZZLE_TRAVEL_FACTOR = 0.1


def file_type_for(filename: str) -> Optional[str]:
    return SUPPORTED_TYPES.get(os.path.splitext(filename or "")[1].lower())


# -------------------------
# Parsers (return flat triangle vertex lists: v0, v1, v2, v0, v1, v2, ...)
# -------------------------
def _looks_binary_stl(data: bytes) -> bool:
    if len(data) < 84:
        return False
    (count,) = struct.unpack_from("<I", data, 80)
    return 84 + count * 50 == len(data)


def parse_stl_ascii(data: bytes) -> List[Vertex]:
    text = data.decode("utf-8", errors="ignore")
    vertices = [(float(m.group(1)), float(m.group(2)), float(m.group(3))) for m in _VERTEX_RE.finditer(text)]
    usable = len(vertices) - len(vertices) % 3
    return vertices[:usable]


def parse_stl_binary(data: bytes) -> List[Vertex]:
    if len(data) < 84:
        return []
    (count,) = struct.unpack_from("<I", data, 80)
    # Declared count may exceed what is actually there
    count = min(count, (len(data) - 84) // 50)
    vertices: List[Vertex] = []
    offset = 84
    for _ in range(count):
        # 12 bytes normal, 3 x 12 bytes vertices, 2 bytes attribute
        floats = struct.unpack_from("<12f", data, offset)
        vertices.append((floats[3], floats[4], floats[5]))
        vertices.append((floats[6], floats[7], floats[8]))
        vertices.append((floats[9], floats[10], floats[11]))
        offset += 50
    return vertices


def parse_stl(data: bytes) -> List[Vertex]:
    is_ascii = b"solid" in data[:5] and not _looks_binary_stl(data)
    return parse_stl_ascii(data) if is_ascii else parse_stl_binary(data)


def parse_obj(data: bytes) -> List[Vertex]:
    """Wavefront OBJ: ``v`` records and ``f`` faces (polygons fan-triangulated)."""
    points: List[Vertex] = []
    vertices: List[Vertex] = []
    for raw in data.decode("utf-8", errors="ignore").splitlines():
        parts = raw.strip().split()
        if not parts:
            continue
        if parts[0] == "v" and len(parts) >= 4:
            try:
                points.append((float(parts[1]), float(parts[2]), float(parts[3])))
            except ValueError:
                continue
        elif parts[0] == "f" and len(parts) >= 4:
            idx: List[int] = []
            for token in parts[1:]:
                head = token.split("/")[0]
                try:
                    i = int(head)
                except ValueError:
                    idx = []
                    break
                # negative indices are relative to the end
                idx.append(i - 1 if i > 0 else len(points) + i)
            if len(idx) < 3 or any(i < 0 or i >= len(points) for i in idx):
                continue
            for k in range(1, len(idx) - 1):
                vertices.extend((points[idx[0]], points[idx[k]], points[idx[k + 1]]))
    return vertices


# -------------------------
# Geometry
# -------------------------
def bounding_box(vertices: List[Vertex]) -> Dict[str, float]:
    if not vertices:
        return {"width": 0.0, "height": 0.0, "depth": 0.0}
    xs = [v[0] for v in vertices]
    ys = [v[1] for v in vertices]
    zs = [v[2] for v in vertices]
    return {
        "width": max(xs) - min(xs),
        "height": max(ys) - min(ys),
        "depth": max(zs) - min(zs),
    }


def mesh_volume(vertices: List[Vertex]) -> float:
    """Sum of signed tetrahedra against the origin (closed meshes only)."""
    total = 0.0
    for i in range(0, len(vertices) - 2, 3):
        (x1, y1, z1), (x2, y2, z2), (x3, y3, z3) = vertices[i], vertices[i + 1], vertices[i + 2]
        total += (
            x1 * (y2 * z3 - z2 * y3)
            - y1 * (x2 * z3 - z2 * x3)
            + z1 * (x2 * y3 - y2 * x3)
        )
    return abs(total) / 6.0


def mesh_surface_area(vertices: List[Vertex]) -> float:
    area = 0.0
    for i in range(0, len(vertices) - 2, 3):
        a, b, c = vertices[i], vertices[i + 1], vertices[i + 2]
        ux, uy, uz = b[0] - a[0], b[1] - a[1], b[2] - a[2]
        vx, vy, vz = c[0] - a[0], c[1] - a[1], c[2] - a[2]
        cx = uy * vz - uz * vy
        cy = uz * vx - ux * vz
        cz = ux * vy - uy * vx
        area += math.sqrt(cx * cx + cy * cy + cz * cz) / 2.0
    return area


def analyze_model(data: bytes, filename: str) -> Dict[str, Any]:
    """Geometry metadata for an uploaded model (mm units)."""
    file_type = file_type_for(filename)
    vertices: List[Vertex] = []
    if file_type == "STL":
        vertices = parse_stl(data)
    elif file_type == "OBJ":
        vertices = parse_obj(data)
    # 3MF is a zipped XML package; accepted but not measured

    volume = mesh_volume(vertices)
    return {
        "filename": filename,
        "fileSize": len(data),
        "fileType": file_type,
        "volume_mm3": volume,
        "volume_cm3": round(volume / 1000.0, 3),
        "surface_area_mm2": mesh_surface_area(vertices),
        "dimensions_mm": bounding_box(vertices),
        "triangleCount": len(vertices) // 3,
        "extractedAt": datetime.now(timezone.utc).isoformat(),
    }


def validate_geometry(metadata: Dict[str, Any]) -> Dict[str, Any]:
    errors: List[str] = []
    warnings: List[str] = []

    size = int(metadata.get("fileSize") or 0)
    triangles = int(metadata.get("triangleCount") or 0)
    volume = float(metadata.get("volume_mm3") or 0.0)
    area = float(metadata.get("surface_area_mm2") or 0.0)
    dims = metadata.get("dimensions_mm") or {}

    if size <= 0:
        errors.append("File is empty")
    if metadata.get("fileType") not in SUPPORTED_TYPES.values():
        errors.append("File type cannot be measured automatically, the price will be set by our team")
    if triangles <= 0:
        errors.append("Model contains no triangles")
    if volume <= 0:
        errors.append("Model volume is zero or negative")
    if any(float(dims.get(k) or 0.0) <= 0 for k in ("width", "height", "depth")):
        errors.append("Model has a zero-size dimension")
    if area <= 0:
        errors.append("Model surface area is zero")

    if 0 < volume < 1:
        warnings.append("Model is extremely small (under 1 mm3)")
    if volume > 1_000_000:
        warnings.append("Model is very large (over 1 litre)")
    if volume > 0 and area > 0 and volume / area < 0.01:
        warnings.append("Model walls look very thin")
    if metadata.get("fileType") == "STL" and triangles and size < triangles * 40:
        warnings.append("File looks truncated")

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def estimate_print_job(metadata: Dict[str, Any], profile: PrintProfile, density: float) -> Dict[str, Any]:
    """Weight (g), time (min), layers and nozzle travel for one copy."""
    dims = metadata.get("dimensions_mm") or {}
    depth = float(dims.get("depth") or 0.0)
    volume = float(metadata.get("volume_mm3") or 0.0)
    area = float(metadata.get("surface_area_mm2") or 0.0)

    layers = math.ceil(depth / profile.layer_height) if depth > 0 else 0
    perimeter = area / depth if depth > 0 else 0.0
    perimeter_s = perimeter * layers / profile.speed
    infill_s = volume * (profile.infill / 100.0) * INFILL_LINE_SECTION / profile.speed
    minutes = (perimeter_s + infill_s) / 60.0

    weight = (volume / 1000.0) * (1 + profile.infill / 100.0) * density

    return {
        "material_weight_g": round(weight, 2),
        "print_time_minutes": int(round(minutes)),
        "layer_count": layers,
        "nozzle_travel_mm": round(area * layers * NOZZLE_TRAVEL_FACTOR, 1),
    }
