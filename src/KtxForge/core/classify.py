"""Texture classification by filename suffix and normal-map pairing."""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

import numpy as np
from PIL import Image

from ..config import TextureType, TEXTURE_PATTERNS

logger = logging.getLogger("texture_pipeline.classify")

_NORMAL_SUFFIX_SWAPS = (
    ("_roughness", "_normal"),
    ("_gloss", "_normal"),
    ("_Roughness", "_Normal"),
    ("_Gloss", "_Normal"),
    ("_rough", "_norm"),
    ("_r", "_n"),
    ("_g", "_n"),
)


def classify_texture(filepath: str) -> TextureType:
    """Classify texture type based on filename suffix patterns.

    Uses longest-match suffix strategy to avoid false positives from
    short patterns matching mid-word substrings.
    """
    name = Path(filepath).stem.lower()
    best_type = TextureType.UNKNOWN
    best_len = 0
    for tex_type, patterns in TEXTURE_PATTERNS.items():
        for pattern in patterns:
            if name.endswith(pattern) and len(pattern) > best_len:
                best_len = len(pattern)
                best_type = tex_type
    logger.debug("Classified %s as %s", filepath, best_type.value)
    return best_type


def looks_like_normal_map(arr: np.ndarray) -> bool:
    """Heuristic: tangent-space normal maps center R/G near 0.5 with a high, flat B."""
    if arr.ndim != 3 or arr.shape[-1] < 3:
        return False
    r, g, b = arr[..., 0], arr[..., 1], arr[..., 2]
    return bool(
        b.mean() > 0.7
        and abs(float(r.mean()) - 0.5) < 0.15
        and abs(float(g.mean()) - 0.5) < 0.15
        and b.std() < 0.15
    )


def _same_dimensions(path_a: str, path_b: str) -> bool:
    try:
        with Image.open(path_a) as a, Image.open(path_b) as b:
            return a.size == b.size
    except OSError as exc:
        logger.debug("Could not compare dimensions of %s and %s: %s", path_a, path_b, exc)
        return False


def find_normal_map(roughness_path: str, validate_dimensions: bool = True) -> Optional[str]:
    """Locate the normal map that pairs with a roughness/gloss texture.

    Tries suffix substitutions (``_roughness`` -> ``_normal`` etc.) and a
    plain ``_normal`` suffix, in the same directory and extension.
    """
    if not roughness_path or not os.path.isfile(roughness_path):
        return None
    directory = os.path.dirname(roughness_path)
    stem, ext = os.path.splitext(os.path.basename(roughness_path))

    candidates = []
    for old, new in _NORMAL_SUFFIX_SWAPS:
        if stem.endswith(old):
            candidates.append(stem[: -len(old)] + new)
    candidates.extend([stem + "_normal", stem + "_Normal"])

    seen = set()
    for candidate in candidates:
        if candidate in seen or candidate == stem:
            continue
        seen.add(candidate)
        candidate_path = os.path.join(directory, candidate + ext)
        if not os.path.isfile(candidate_path):
            continue
        if validate_dimensions and not _same_dimensions(roughness_path, candidate_path):
            logger.info(
                "Skipping normal map candidate %s: dimensions differ from %s",
                candidate_path, roughness_path,
            )
            continue
        logger.info("Found normal map %s for %s", candidate_path, roughness_path)
        return candidate_path

    logger.debug("No normal map found for %s", roughness_path)
    return None


CHANNEL_SUFFIXES = {
    "ao": ("_ao", "_ambientocclusion", "_occlusion"),
    "gloss": ("_gloss", "_glossiness", "_smoothness"),
    "metallic": ("_metallic", "_metalness", "_metal"),
    "height": ("_height", "_displacement", "_disp"),
}

_MATERIAL_SUFFIXES = (
    "_albedo", "_diffuse", "_color", "_normal", "_roughness",
    "_ao", "_gloss", "_metallic", "_height",
)


def _strip_material_suffix(stem: str) -> str:
    lowered = stem.lower()
    for suffix in _MATERIAL_SUFFIXES:
        if lowered.endswith(suffix):
            return stem[: -len(suffix)]
    return stem


def detect_channel_sources(base_path: str,
                           validate_dimensions: bool = True) -> Dict[str, str]:
    """Find the AO/gloss/metallic/height maps that share *base_path*'s material.

    *base_path* may be any texture of the material (albedo, normal, ...).
    Returns a mapping of channel name to path for the maps that exist.
    """
    if not base_path or not os.path.isfile(base_path):
        logger.warning("Base texture not found: %s", base_path)
        return {}
    directory = os.path.dirname(base_path)
    stem, ext = os.path.splitext(os.path.basename(base_path))
    base = _strip_material_suffix(stem)

    # Suffix case varies between authoring tools (_AO, _Gloss, ...).
    by_lower = {name.lower(): name for name in os.listdir(directory or ".")}
    found = {}
    for channel, suffixes in CHANNEL_SUFFIXES.items():
        for suffix in suffixes:
            name = by_lower.get((base + suffix + ext).lower())
            if name is None:
                continue
            candidate = os.path.join(directory, name)
            if validate_dimensions and not _same_dimensions(base_path, candidate):
                logger.info("Skipping %s candidate %s: dimensions differ from %s",
                            channel, candidate, base_path)
                continue
            found[channel] = candidate
            break
    logger.info("Detected channel maps for %s: %s", base_path,
                ", ".join(f"{k}={os.path.basename(v)}" for k, v in found.items()) or "none")
    return found
