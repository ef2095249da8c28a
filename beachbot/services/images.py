from __future__ import annotations

import io

from PIL import Image, UnidentifiedImageError

MAX_SOURCE_BYTES = 8 * 1024 * 1024
THUMBNAIL_MAX_DIM = 256


def normalize_image(raw: bytes, max_dim: int = THUMBNAIL_MAX_DIM) -> bytes:
    if not raw:
        raise ValueError("Image is empty.")
    if len(raw) > MAX_SOURCE_BYTES:
        raise ValueError(f"Image is too large (max {MAX_SOURCE_BYTES // (1024 * 1024)}MB source).")
    try:
        with Image.open(io.BytesIO(raw)) as img_src:
            if img_src.mode in {"RGBA", "LA", "P"}:
                img_base = img_src.convert("RGBA")
            else:
                img_base = img_src.convert("RGB")
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError("Uploaded data is not a valid image.") from e

    if max(img_base.size) > max_dim:
        img_base.thumbnail((max_dim, max_dim), Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    img_base.save(buf, format="PNG", optimize=True)
    return buf.getvalue()
