"""
Pixel-level image forensics (Pillow + numpy).

Synchronous and CPU bound; callers run ``run_forensics`` in an executor. Each
layer returns ``None`` when it cannot be computed for the given image.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

AI_SOFTWARE_KEYWORDS = (
    "stable diffusion", "midjourney", "dall-e", "dall·e", "openai", "comfyui",
    "automatic1111", "invoke ai", "nai diffusion", "novelai", "flux",
    "firefly", "adobe firefly", "recraft", "imagen", "playground ai",
    "leonardo ai", "civitai", "ai generated", "diffusion",
)
EDITING_SOFTWARE_KEYWORDS = (
    "photoshop", "gimp", "lightroom", "capture one", "affinity photo",
    "pixelmator", "paint.net", "snapseed",
)
# Text chunks written by common generation front-ends.
GENERATOR_INFO_KEYS = ("parameters", "prompt", "workflow", "sd-metadata", "invokeai_metadata")

EXIF_MAKE = 0x010F
EXIF_MODEL = 0x0110
EXIF_SOFTWARE = 0x0131
GPS_IFD = 0x8825
GPS_LATITUDE = 2

ELA_MAX_SIDE = 2000
ELA_QUALITY = 75
ELA_BLOCK = 16
NOISE_MAX_SIDE = 1000
NOISE_PATCH = 32
# Pixel ceiling for decoding; larger images leave the pixel layers uncomputable.
MAX_DECODE_PIXELS = 40_000_000


@dataclass
class LayerFinding:
    signal: str
    detail: str
    score: float
    extras: Dict[str, Any] = field(default_factory=dict)


def decode_image(data: bytes) -> Optional[Image.Image]:
    try:
        image = Image.open(io.BytesIO(data))
        if image.width * image.height > MAX_DECODE_PIXELS:
            logger.warning("Image too large to analyze: %dx%d", image.width, image.height)
            return None
        image.draft("RGB", (ELA_MAX_SIDE, ELA_MAX_SIDE))
        image.load()
    except (Image.DecompressionBombError, UnidentifiedImageError, OSError, ValueError) as exc:
        logger.warning("Could not decode image: %s", exc)
        return None
    return image


def analyze_metadata(image: Image.Image) -> LayerFinding:
    exif = image.getexif()
    make = str(exif.get(EXIF_MAKE) or "").strip()
    model = str(exif.get(EXIF_MODEL) or "").strip()
    software = str(exif.get(EXIF_SOFTWARE) or image.info.get("Software") or "").strip()
    try:
        gps = exif.get_ifd(GPS_IFD)
    except (KeyError, ValueError, OSError):
        gps = {}
    has_camera = bool(make or model)
    has_gps = bool(gps and GPS_LATITUDE in gps)

    lowered = software.lower()
    generator_chunk = next((k for k in GENERATOR_INFO_KEYS if k in image.info), None)
    if any(k in lowered for k in AI_SOFTWARE_KEYWORDS) or generator_chunk:
        tag = software or f"{generator_chunk} metadata chunk"
        return LayerFinding("ai_software_detected", f'AI generation software detected in metadata: "{tag}".', 0.95)
    if has_camera:
        parts = [f"Camera: {model or make}"]
        if has_gps:
            parts.append("GPS coordinates present")
        return LayerFinding("authentic_camera", ". ".join(parts) + ".", 0.1 if has_gps else 0.2)
    if any(k in lowered for k in EDITING_SOFTWARE_KEYWORDS):
        return LayerFinding("edited", f'Image editing software detected: "{software}". May have been modified.', 0.5)
    return LayerFinding(
        "no_metadata",
        "No camera EXIF data found. No GPS, no camera model, no lens information.",
        0.7,
    )


def analyze_ela(image: Image.Image) -> Optional[LayerFinding]:
    rgb = image.copy()
    rgb.thumbnail((ELA_MAX_SIDE, ELA_MAX_SIDE))
    rgb = rgb.convert("RGB")
    buffer = io.BytesIO()
    rgb.save(buffer, "JPEG", quality=ELA_QUALITY)
    buffer.seek(0)
    recompressed = Image.open(buffer).convert("RGB")

    diff = np.abs(np.asarray(rgb, dtype=np.int16) - np.asarray(recompressed, dtype=np.int16)).mean(axis=2)
    rows, cols = diff.shape[0] // ELA_BLOCK, diff.shape[1] // ELA_BLOCK
    if rows == 0 or cols == 0:
        return None
    blocks = (
        diff[: rows * ELA_BLOCK, : cols * ELA_BLOCK]
        .reshape(rows, ELA_BLOCK, cols, ELA_BLOCK)
        .mean(axis=(1, 3))
        .ravel()
    )
    mean = float(blocks.mean())
    std = float(blocks.std())
    cv = std / mean if mean > 0 else 0.0
    anomalous = int((blocks > mean + 2 * std).sum())
    ratio = anomalous / blocks.size
    extras = {"anomalous_regions": anomalous, "coefficient_of_variation": round(cv, 4)}

    if ratio > 0.15 or cv > 0.8:
        return LayerFinding(
            "significant_anomalies",
            f"Error levels show significant inconsistencies ({anomalous} anomalous regions), "
            "suggesting manipulation or AI generation.",
            0.8,
            extras,
        )
    if ratio > 0.05 or cv > 0.5:
        return LayerFinding(
            "minor_anomalies",
            f"Error levels show some unusual patterns ({anomalous} anomalous regions), minor inconsistencies detected.",
            0.55,
            extras,
        )
    return LayerFinding(
        "consistent",
        "Error levels are consistent across the image, typical of unmodified camera captures.",
        0.2,
        extras,
    )


def analyze_noise(image: Image.Image) -> Optional[LayerFinding]:
    gray = image.copy()
    gray.thumbnail((NOISE_MAX_SIDE, NOISE_MAX_SIDE))
    gray = gray.convert("L")
    data = np.asarray(gray, dtype=np.float64)
    rows, cols = data.shape[0] // NOISE_PATCH, data.shape[1] // NOISE_PATCH
    if rows * cols < 4:
        return None

    patch_std = (
        data[: rows * NOISE_PATCH, : cols * NOISE_PATCH]
        .reshape(rows, NOISE_PATCH, cols, NOISE_PATCH)
        .std(axis=(1, 3))
        .ravel()
    )
    mean = float(patch_std.mean())
    cv = float(patch_std.std()) / mean if mean > 0 else 0.0
    uniformity = max(0.0, min(1.0, 1.0 - cv))

    laplacian = np.abs(
        -4 * data[1:-1, 1:-1] + data[:-2, 1:-1] + data[2:, 1:-1] + data[1:-1, :-2] + data[1:-1, 2:]
    )
    high_freq = min(1.0, float(laplacian.mean()) / 30.0) if laplacian.size else 0.0

    too_uniform = uniformity > 0.85
    too_smooth = high_freq < 0.15
    extras = {"noise_uniformity": round(uniformity, 4), "high_frequency_energy": round(high_freq, 4)}
    if too_uniform and too_smooth:
        return LayerFinding(
            "synthetic_noise",
            "Noise distribution is unnaturally uniform, lacking the natural variation expected from "
            "camera sensors. Consistent with AI-generated imagery.",
            0.85,
            extras,
        )
    if too_uniform or too_smooth:
        return LayerFinding(
            "suspicious_patterns",
            "Noise patterns show some characteristics not typical of natural camera sensor noise.",
            0.6,
            extras,
        )
    return LayerFinding(
        "natural_noise",
        "Noise distribution shows natural variation consistent with camera sensor capture.",
        0.2,
        extras,
    )


def run_forensics(data: bytes) -> Dict[str, Optional[LayerFinding]]:
    """All pixel layers for one image; undecodable input yields no layers."""
    image = decode_image(data)
    if image is None:
        return {"metadata": None, "ela": None, "noise": None}
    layers: Dict[str, Optional[LayerFinding]] = {}
    for name, layer in (("metadata", analyze_metadata), ("ela", analyze_ela), ("noise", analyze_noise)):
        try:
            layers[name] = layer(image)
        except (OSError, ValueError) as exc:
            logger.warning("Forensic layer %s failed: %s", name, exc)
            layers[name] = None
    return layers
