"""Container image reference parsing.

Implements the subset of the distribution reference grammar needed to split
``[registry/]repository[:tag][@digest]`` and to canonicalise image IDs
reported in container statuses.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|[-]+)[a-z0-9]+)*"
_DOMAIN_PART = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = rf"{_DOMAIN_PART}(?:\.{_DOMAIN_PART})*(?::[0-9]+)?"
_TAG = r"[\w][\w.-]{0,127}"
_DIGEST = r"[A-Za-z][A-Za-z0-9]*(?:[-_+.][A-Za-z][A-Za-z0-9]*)*:[0-9a-fA-F]{32,}"

_RE_REFERENCE = re.compile(
    rf"^(?P<name>(?:{_DOMAIN}/)?{_COMPONENT}(?:/{_COMPONENT})*)(?::(?P<tag>{_TAG}))?(?:@(?P<digest>{_DIGEST}))?$"
)
_RE_IMAGE_ID = re.compile(r"^[a-f0-9]{64}$")
# container runtimes prefix image IDs with e.g. "docker-pullable://"
_RE_RUNTIME_PREFIX = re.compile(r"^[a-z-]+://")

_DEFAULT_DOMAIN = "docker.io"
_OFFICIAL_REPO_PREFIX = "library/"
_DEFAULT_TAG = "latest"


class ImageReferenceError(ValueError):
    """Raised when an image string is not a valid named reference."""


@dataclass(frozen=True)
class ImageReference:
    repository: str
    tag: str = ""
    digest: str = ""


def parse_reference(image: str) -> ImageReference:
    """Split *image* into repository, tag and digest without defaults.

    Raises:
        ImageReferenceError: *image* is empty, a bare image ID, or malformed.
    """
    if not image:
        raise ImageReferenceError("empty image reference")
    if _RE_IMAGE_ID.match(image):
        raise ImageReferenceError(f"cannot retrieve image name from image id {image!r}")
    match = _RE_REFERENCE.match(image)
    if match is None:
        raise ImageReferenceError(f"invalid image reference {image!r}")
    return ImageReference(
        repository=match.group("name"),
        tag=match.group("tag") or "",
        digest=match.group("digest") or "",
    )


def parse_image_name(image: str) -> ImageReference:
    """Like :func:`parse_reference` but defaults the tag to ``latest``."""
    ref = parse_reference(image)
    if ref.tag:
        return ref
    return ImageReference(repository=ref.repository, tag=_DEFAULT_TAG, digest=ref.digest)


def service_version_from_image(image: str) -> str:
    """Derive ``service.version`` from an image reference.

    ``tag@digest`` when both are present, otherwise whichever one is.

    Raises:
        ImageReferenceError: the image is malformed or has neither tag nor digest.
    """
    ref = parse_reference(image)
    if ref.digest and ref.tag:
        return f"{ref.tag}@{ref.digest}"
    if ref.digest:
        return ref.digest
    if ref.tag:
        return ref.tag
    raise ImageReferenceError(f"cannot retrieve version from image {image!r}")


def canonical_image_ref(image_id: str) -> str:
    """Normalise a container status image ID to ``domain/repo@digest``.

    Raises:
        ImageReferenceError: the ID carries no digest or is malformed.
    """
    ref = parse_reference(_RE_RUNTIME_PREFIX.sub("", image_id, count=1))
    if not ref.digest:
        raise ImageReferenceError(f"image id {image_id!r} is not a canonical reference")
    return f"{_normalize_name(ref.repository)}@{ref.digest}"


def _normalize_name(name: str) -> str:
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return name
    if not sep:
        return f"{_DEFAULT_DOMAIN}/{_OFFICIAL_REPO_PREFIX}{name}"
    return f"{_DEFAULT_DOMAIN}/{name}"
