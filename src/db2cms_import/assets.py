"""Embedded asset resolution for imported content.

Finds image and linked-file references in a content string, reuses or
downloads the matching media, and rewrites the content to point at the
local copies.

Extraction is exposed as pure functions returning AssetReference records
with the character span of each reference:

    <img src="..." srcset="... 480w, ... 800w">
    <a href="....pdf">
    [gallery ids="12,eyJ1cmwiOi...,34"]

Gallery ids that are not numeric are base64-encoded JSON descriptors
carrying url, title, caption, alt and description.
"""

from __future__ import annotations

import base64
import binascii
import html
import json
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import unquote, urlsplit

from PIL import Image, IptcImagePlugin

from db2cms_import.contracts import MediaStore
from db2cms_import.errors import AssetFetchError, Db2CmsError
from db2cms_import.hooks import HookRegistry
from db2cms_import.models import MediaAsset

logger = logging.getLogger(__name__)

DEFAULT_FILE_EXTENSIONS = ("doc", "docx", "odt", "pdf", "xls", "xlsx", "ods", "ppt", "pptx", "txt")

IMAGES = "images"
FILES = "files"

EXIF_IMAGE_DESCRIPTION = 0x010E

# Placeholders protecting dots and underscores in a file stem while the
# generic sanitizer runs.
_DOT_TOKEN = "willbedots"
_UNDERSCORE_TOKEN = "willbetrimmed"

_SPECIAL_CHARS = frozenset('?[]/\\=<>:;,\'"&$#*()|~`!{}%+’«»”“\x00')

_REMOTE_URL_RE = re.compile(r"^(http|ftp)s?://", re.IGNORECASE)

_ATTR_VALUE = r"""\s*=\s*(?:"([^"]*)"|'([^']*)'|([^\s>]*))"""

GALLERY_RE = re.compile(r'\[gallery[^\]]*ids="([^\]^"]*)"[^\]]*\]', re.IGNORECASE | re.DOTALL)
IMG_SRC_RE = re.compile(r"<img\s[^>]*?(?<![\w-])src" + _ATTR_VALUE, re.IGNORECASE | re.DOTALL)
IMG_SRCSET_RE = re.compile(r"<img\s[^>]*?(?<![\w-])srcset" + _ATTR_VALUE, re.IGNORECASE | re.DOTALL)
LINK_HREF_RE = re.compile(r"<a\s[^>]*?(?<![\w-])href" + _ATTR_VALUE, re.IGNORECASE | re.DOTALL)


# =============================================================================
# Name helpers
# =============================================================================


def get_file_extension(name: str) -> str:
    """Return the text after the last dot of name.

    No dot, a leading dot only, or an extension longer than four characters
    all yield "".

    Examples:
        >>> get_file_extension("report.final.pdf")
        'pdf'
        >>> get_file_extension("archive.tar.gz")
        'gz'
        >>> get_file_extension("no_extension_file")
        ''
    """
    index = name.rfind(".")
    if index <= 0:
        return ""
    ext = name[index + 1 :]
    return ext if len(ext) <= 4 else ""


def get_basename(url: str) -> str:
    """Return the last slash-separated segment of url."""
    return url.split("/")[-1]


def sanitize_file_name(name: str) -> str:
    """Apply the CMS's generic file name sanitization.

    Removes characters that are unsafe in file names, collapses whitespace
    and dashes into a single dash, and trims leading and trailing dots,
    dashes and underscores.
    """
    name = "".join(char for char in name if char not in _SPECIAL_CHARS)
    name = re.sub(r"[\r\n\t -]+", "-", name)
    return name.strip(".-_")


def sanitize_title(title: str) -> str:
    """Return the URL slug the CMS derives from a title.

    Examples:
        >>> sanitize_title("Café News & Events")
        'cafe-news-events'
    """
    title = re.sub(r"<[^>]*>", "", title)
    title = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode("ascii")
    title = re.sub(r"[^a-z0-9_\s-]", "", title.lower())
    return re.sub(r"[\s-]+", "-", title).strip("-")


def sanitize_filename(filename: str) -> str:
    """Normalize a downloaded file name for media lookups.

    Strips any query string, then sanitizes the stem while keeping its dots
    and underscores, and keeps the extension verbatim.

    Examples:
        >>> sanitize_filename("my photo_v1.2.jpg?w=300")
        'my-photo_v1.2.jpg'
    """
    filename = re.sub(r"\?.*", "", filename)
    parts = filename.split(".")
    if len(parts) < 2:
        return filename

    ext = parts[-1]
    stem = filename[: -(len(ext) + 1)]
    stem = stem.replace(".", _DOT_TOKEN).replace("_", _UNDERSCORE_TOKEN)
    stem = sanitize_file_name(stem)
    stem = stem.replace(_UNDERSCORE_TOKEN, "_").replace(_DOT_TOKEN, ".")
    return f"{stem}.{ext}"


def normalize_asset_name(url: str) -> str:
    """Return the normalized file name used to look up the asset behind url."""
    return sanitize_filename(unquote(get_basename(url)))


def scaled_name(name: str) -> str:
    """Return the name the CMS gives to a downscaled copy of a large image."""
    ext = get_file_extension(name)
    if not ext:
        return name
    return name.replace(f".{ext}", f"-scaled.{ext}")


def _iptc_text(value: bytes | list[bytes] | None) -> str:
    if isinstance(value, list):
        value = value[0] if value else None
    if not value:
        return ""
    return value.decode("utf-8", errors="replace").strip()


def read_image_title(path: Path) -> str:
    """Read the title embedded in an image file.

    Uses the IPTC headline, then the IPTC object name, then a short EXIF
    image description. Returns "" for files that are not readable images.
    """
    try:
        with Image.open(path) as image:
            iptc = IptcImagePlugin.getiptcinfo(image) or {}
            description = image.getexif().get(EXIF_IMAGE_DESCRIPTION)
    except (OSError, SyntaxError) as e:
        # Pillow reports corrupt IPTC blocks as SyntaxError.
        logger.debug(f"Cannot read image metadata of '{path}': {e}")
        return ""

    title = _iptc_text(iptc.get((2, 105))) or _iptc_text(iptc.get((2, 5)))
    if title:
        return title

    if isinstance(description, bytes):
        description = description.decode("utf-8", errors="replace")
    description = (description or "").strip()
    return description if len(description) < 80 else ""


def is_remote_url(url: str) -> bool:
    """Check that url is an absolute http(s) or ftp(s) URL."""
    return bool(url) and _REMOTE_URL_RE.match(url) is not None


def is_local_url(url: str, local_domain: str) -> bool:
    """Check whether url is served by the local site.

    The host, with ":port" appended when the URL carries one, must equal
    local_domain or be a subdomain of it.

    Examples:
        >>> is_local_url("https://cdn.example.com/a.png", "example.com")
        True
        >>> is_local_url("https://notexample.com/a.png", "example.com")
        False
    """
    if not local_domain:
        return False
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        return False
    host = parts.hostname or ""
    if not host:
        return False
    if port:
        host = f"{host}:{port}"

    domain = local_domain.lower()
    return host == domain or host.endswith(f".{domain}")


def _is_valid_url(value: str) -> bool:
    try:
        parts = urlsplit(value)
    except ValueError:
        return False
    return bool(parts.scheme and parts.netloc)


# =============================================================================
# Extraction
# =============================================================================


@dataclass(frozen=True)
class GalleryDescriptor:
    """Decoded gallery id carrying a remote image and its captions."""

    token: str
    url: str
    title: str = ""
    caption: str = ""
    alt: str = ""
    description: str = ""

    @classmethod
    def decode(cls, token: str) -> GalleryDescriptor | None:
        """Decode a base64 JSON gallery token, or None if it is not one."""
        try:
            data = json.loads(base64.b64decode(token, validate=True))
        except (binascii.Error, ValueError):
            return None
        if not isinstance(data, dict) or not data.get("url"):
            return None
        return cls(
            token=token,
            url=str(data["url"]),
            title=str(data.get("title") or ""),
            caption=str(data.get("caption") or ""),
            alt=str(data.get("alt") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass(frozen=True)
class AssetReference:
    """One asset reference found in a content string.

    Attributes:
        url: Referenced URL as written in the content.
        span: (start, end) offsets of the reference in the content.
        source: "gallery", "img", "srcset" or "link".
        descriptor: Decoded gallery descriptor for gallery references.
    """

    url: str
    span: tuple[int, int]
    source: str
    descriptor: GalleryDescriptor | None = None


def _attribute_value(match: re.Match[str]) -> tuple[str, tuple[int, int]] | None:
    for group in (1, 2, 3):
        if match.group(group):
            return match.group(group), match.span(group)
    return None


def extract_gallery_references(content: str) -> list[AssetReference]:
    """Extract encoded gallery descriptors. Numeric ids are skipped."""
    references: list[AssetReference] = []
    for gallery in GALLERY_RE.finditer(content):
        offset = gallery.start(1)
        for token_match in re.finditer(r"[^,]+", gallery.group(1)):
            token = token_match.group(0).strip()
            if not token or token.isdigit():
                continue
            descriptor = GalleryDescriptor.decode(token)
            if descriptor is None:
                logger.debug(f"Ignoring undecodable gallery id '{token}'")
                continue
            start = offset + token_match.start() + token_match.group(0).index(token)
            references.append(
                AssetReference(
                    url=descriptor.url,
                    span=(start, start + len(token)),
                    source="gallery",
                    descriptor=descriptor,
                )
            )
    return references


def extract_image_references(content: str) -> list[AssetReference]:
    """Extract gallery descriptors, then img src and srcset URLs, in order."""
    references = extract_gallery_references(content)

    for match in IMG_SRC_RE.finditer(content):
        value = _attribute_value(match)
        if value is not None:
            references.append(AssetReference(url=value[0], span=value[1], source="img"))

    for match in IMG_SRCSET_RE.finditer(content):
        value = _attribute_value(match)
        if value is None:
            continue
        srcset, (start, _) = value
        for candidate in re.finditer(r"[^\s,]+", srcset):
            if _is_valid_url(candidate.group(0)):
                references.append(
                    AssetReference(
                        url=candidate.group(0),
                        span=(start + candidate.start(), start + candidate.end()),
                        source="srcset",
                    )
                )

    return references


def extract_file_references(
    content: str, extensions: list[str] | tuple[str, ...] = DEFAULT_FILE_EXTENSIONS
) -> list[AssetReference]:
    """Extract link targets whose file extension is in extensions.

    The extension is read from the URL path, so query strings and fragments
    do not hide it.
    """
    allowed = {ext.lower() for ext in extensions}
    references: list[AssetReference] = []
    for match in LINK_HREF_RE.finditer(content):
        value = _attribute_value(match)
        if value is None:
            continue
        href, span = value
        try:
            path = urlsplit(href).path
        except ValueError:
            logger.debug(f"Ignoring malformed link '{href}'")
            continue
        ext = get_file_extension(path).lower()
        if ext and ext in allowed:
            references.append(AssetReference(url=href, span=span, source="link"))
    return references


def rewrite_content(content: str, replacements: dict[str, str]) -> str:
    """Replace every occurrence of each key in a single left-to-right pass.

    Longer keys win over keys they contain, and replaced text is never
    scanned again.
    """
    keys = [key for key in replacements if key]
    if not keys:
        return content
    pattern = re.compile(
        "|".join(re.escape(key) for key in sorted(keys, key=len, reverse=True))
    )
    return pattern.sub(lambda match: replacements[match.group(0)], content)


# =============================================================================
# Resolver
# =============================================================================


@dataclass
class AssetResolution:
    """Outcome of resolving the assets of one content string."""

    content: str
    original: str
    resolved: list[MediaAsset] = field(default_factory=list)
    failures: list[AssetFetchError] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.content != self.original


class AssetResolver:
    """Finds or downloads the media behind embedded references.

    Found and downloaded assets are cached by normalized name for the
    lifetime of the resolver, which is one import run.
    """

    def __init__(
        self,
        media: MediaStore,
        hooks: HookRegistry,
        local_domain: str,
        file_extensions: list[str] | tuple[str, ...] = DEFAULT_FILE_EXTENSIONS,
        uploads_dir: Path | None = None,
        search_existing: bool = True,
    ) -> None:
        self.media = media
        self.hooks = hooks
        self.local_domain = local_domain
        self.file_extensions = tuple(file_extensions)
        self.uploads_dir = uploads_dir
        self.search_existing = search_existing
        self._cache: dict[str, MediaAsset] = {}

    async def resolve(self, owner_id: int, content: str) -> AssetResolution:
        """Run the image pass, then the linked-file pass, over content."""
        images = await self.resolve_images(owner_id, content)
        files = await self.resolve_files(owner_id, images.content)
        return AssetResolution(
            content=files.content,
            original=content,
            resolved=images.resolved + files.resolved,
            failures=images.failures + files.failures,
        )

    async def resolve_images(self, owner_id: int, content: str) -> AssetResolution:
        logger.info(f"Resolving images in content of {owner_id}")
        return await self._resolve(
            owner_id, content, extract_image_references(content), IMAGES
        )

    async def resolve_files(self, owner_id: int, content: str) -> AssetResolution:
        logger.info(f"Resolving linked files in content of {owner_id}")
        return await self._resolve(
            owner_id,
            content,
            extract_file_references(content, self.file_extensions),
            FILES,
        )

    async def _resolve(
        self,
        owner_id: int,
        content: str,
        references: list[AssetReference],
        bundle: str,
    ) -> AssetResolution:
        result = AssetResolution(content=content, original=content)
        replacements: dict[str, str] = {}
        seen: set[str] = set()
        url_filter = self.hooks.image_url if bundle == IMAGES else self.hooks.file_url

        for reference in references:
            key = reference.descriptor.token if reference.descriptor else reference.url
            if not reference.url or key in seen:
                continue
            seen.add(key)

            if is_local_url(reference.url, self.local_domain):
                continue

            url = url_filter.apply(reference.url, owner_id)
            if not is_remote_url(url):
                continue

            try:
                asset = await self._find_or_download(url, owner_id, bundle)
            except AssetFetchError as e:
                logger.warning(str(e))
                result.failures.append(e)
                continue
            except ValueError as e:
                failure = AssetFetchError(url, str(e))
                logger.warning(str(failure))
                result.failures.append(failure)
                continue
            if asset is None:
                continue
            result.resolved.append(asset)

            if reference.descriptor is not None:
                replacements[reference.descriptor.token] = str(asset.id)
                await self._write_gallery_metadata(asset, reference.descriptor)

            asset_url = asset.url or await self.media.get_url(asset.id)
            if asset_url:
                replacements[reference.url] = asset_url

        result.content = rewrite_content(content, replacements)
        return result

    async def _find_or_download(
        self, url: str, owner_id: int, bundle: str
    ) -> MediaAsset | None:
        name = normalize_asset_name(url)
        logger.info(f"-- Searching for existing {bundle} '{url}' by name '{name}'")

        asset = await self.find_existing(name, bundle)
        if asset is not None:
            logger.info(f"-- Existing media {asset.id} found for '{unquote(url)}'")
            return asset

        download_url = html.unescape(url.strip())
        if not download_url:
            return None

        logger.info(f"-- Downloading {bundle} from '{download_url}'")
        asset = await self.media.download_and_register(download_url, owner_id, name)
        self._cache[name] = asset
        logger.info(f"Created media {asset.id} for '{download_url}'")
        return asset

    async def find_existing(self, name: str, bundle: str = IMAGES) -> MediaAsset | None:
        """Look up an already registered asset for a normalized name.

        Tries, in order: the run cache, the exact name, its scaled variant,
        the generically sanitized name and its scaled variant, a title or
        slug match (images only) and finally the uploads directory. The
        media_lookup stage receives the result and may replace it.
        """
        asset = self._cache.get(name)
        if asset is None and self.search_existing:
            asset = await self._search_library(name, bundle)
            if asset is not None:
                self._cache[name] = asset

        return self.hooks.media_lookup.apply(asset, name, bundle)

    async def _search_library(self, name: str, bundle: str) -> MediaAsset | None:
        candidates = [name, scaled_name(name)]
        sanitized = sanitize_file_name(name)
        for candidate in (sanitized, scaled_name(sanitized)):
            if candidate not in candidates:
                candidates.append(candidate)

        for candidate in candidates:
            asset = await self.media.find_by_normalized_name(candidate)
            if asset is not None:
                logger.info(f"-- Found existing media {asset.id} by file name '{candidate}'")
                return asset

        if bundle != IMAGES:
            return None

        asset = await self.media.find_by_title(name)
        if asset is not None:
            logger.info(f"-- Found existing media {asset.id} by title or slug '{name}'")
            return asset

        if self.uploads_dir is not None and (self.uploads_dir / name).is_file():
            title = read_image_title(self.uploads_dir / name)
            if title and not sanitize_title(title).isdigit():
                asset = await self.media.find_by_title(title)
                if asset is not None:
                    logger.info(f"-- Found existing media {asset.id} by embedded title '{title}'")
                    return asset

        return None

    async def _write_gallery_metadata(
        self,
        asset: MediaAsset,
        descriptor: GalleryDescriptor,
    ) -> None:
        try:
            await self.media.set_asset_metadata(
                asset.id,
                title=descriptor.title.strip(),
                caption=descriptor.caption.strip(),
                alt=descriptor.alt.strip(),
                description=descriptor.description.strip(),
            )
        except Db2CmsError as e:
            logger.warning(f"-- Failed to update metadata of media {asset.id}: {e}")
