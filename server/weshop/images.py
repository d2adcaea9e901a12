"""Responsive image URLs. Only Unsplash URLs are resized; others pass through."""

import re
from typing import Dict, Tuple

from .models import ResponsiveImage


IMAGE_KINDS = ("card", "thumbnail", "gallery", "hero")

WIDTHS: Dict[str, int] = {
    "card": 300,
    "thumbnail": 80,
    "gallery": 800,
    "hero": 1200,
}

SRCSET_WIDTHS: Dict[str, Tuple[int, ...]] = {
    "card": (200, 300, 400),
    "thumbnail": (60, 80, 100),
    "gallery": (600, 800, 1200),
    "hero": (800, 1200, 1600),
}

SIZES: Dict[str, str] = {
    "card": "(max-width: 640px) 200px, (max-width: 768px) 300px, 400px",
    "thumbnail": "80px",
    "gallery": "(max-width: 640px) 600px, (max-width: 1024px) 800px, 1200px",
    "hero": "(max-width: 640px) 800px, (max-width: 1024px) 1200px, 1600px",
}

_WIDTH_PARAM = re.compile(r"w=\d+")


def _check_kind(kind: str) -> None:
    if kind not in IMAGE_KINDS:
        raise ValueError(f"Unknown image kind: {kind!r}")


def _resizable(url: str) -> bool:
    return bool(url) and "unsplash.com" in url


def _with_width(url: str, width: int) -> str:
    return _WIDTH_PARAM.sub(f"w={width}", url, count=1)


def responsive_url(url: str, kind: str = "card") -> str:
    _check_kind(kind)
    if not _resizable(url):
        return url
    return _with_width(url, WIDTHS[kind])


def srcset(url: str, kind: str = "card") -> str:
    _check_kind(kind)
    if not _resizable(url):
        return url
    return ", ".join(f"{_with_width(url, width)} {width}w" for width in SRCSET_WIDTHS[kind])


def sizes(kind: str = "card") -> str:
    _check_kind(kind)
    return SIZES[kind]


def responsive_image(url: str, kind: str = "card") -> ResponsiveImage:
    return ResponsiveImage(src=responsive_url(url, kind), srcset=srcset(url, kind), sizes=sizes(kind))
