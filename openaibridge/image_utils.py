"""Image extraction from OpenAI vision messages."""

import base64
import logging
import re
from dataclasses import asdict, dataclass

import httpx

from .models import ContentPart, ImageUrlContent, Message, TextContent

logger = logging.getLogger(__name__)

# URL extension -> image format, for fetched images without a usable Content-Type
EXTENSION_FORMATS = {
    ".png": "png",
    ".jpg": "jpeg",
    ".jpeg": "jpeg",
    ".gif": "gif",
    ".webp": "webp",
}

FETCH_TIMEOUT = 30.0


@dataclass
class ImageAttachment:
    """Image handed to the session bridge alongside the prompt."""

    data: str  # base64, no data: prefix
    format: str  # "png", "jpeg", ...

    def to_dict(self) -> dict[str, str]:
        return asdict(self)


def parse_data_url(url: str) -> tuple[str, str]:
    """Extract media type and base64 data from a data URL.

    Args:
        url: Data URL in format data:image/xxx;base64,...

    Returns:
        Tuple of (media_type, base64_data)

    Raises:
        ValueError: If URL is not a valid data URL
    """
    match = re.match(r"data:([^;,]+);base64,(.+)", url, re.DOTALL)
    if not match:
        raise ValueError(f"Invalid data URL format: {url[:50]}...")
    return match.group(1), match.group(2)


def is_http_url(url: str) -> bool:
    """Check if URL is an HTTP/HTTPS URL."""
    return url.startswith("http://") or url.startswith("https://")


def is_data_url(url: str) -> bool:
    """Check if URL is a data URL."""
    return url.startswith("data:")


def media_type_to_format(media_type: str) -> str:
    """Map ``image/jpeg`` to ``jpeg``; parameters such as ``; charset`` are dropped."""
    subtype = media_type.split(";", 1)[0].strip().split("/")[-1].lower()
    return "jpeg" if subtype == "jpg" else subtype


def _format_from_url(url: str) -> str | None:
    path = url.split("?", 1)[0].lower()
    for ext, fmt in EXTENSION_FORMATS.items():
        if path.endswith(ext):
            return fmt
    return None


async def fetch_image(url: str, client: httpx.AsyncClient) -> ImageAttachment:
    """Download an image and return it base64 encoded.

    Raises:
        httpx.HTTPError: If the request fails or returns an error status
        ValueError: If the image format cannot be determined
    """
    response = await client.get(url, follow_redirects=True)
    response.raise_for_status()
    content_type = response.headers.get("content-type", "")
    if content_type.startswith("image/"):
        fmt = media_type_to_format(content_type)
    else:
        fmt = _format_from_url(url)
    if fmt is None:
        raise ValueError(f"Cannot determine image format for {url[:80]}")
    return ImageAttachment(data=base64.b64encode(response.content).decode("ascii"), format=fmt)


async def extract_first_image(
    messages: list[Message],
    client: httpx.AsyncClient | None = None,
) -> ImageAttachment | None:
    """Return the first usable image in the user messages, or None.

    Data URLs are used as-is. HTTP(S) URLs are downloaded; a failed download is
    logged and the next image part is tried.
    """
    for part in _user_image_parts(messages):
        url = part.image_url.url
        if is_data_url(url):
            try:
                media_type, data = parse_data_url(url)
            except ValueError as e:
                logger.warning(f"[images] Skipping image: {e}")
                continue
            return ImageAttachment(data=data, format=media_type_to_format(media_type))
        if is_http_url(url):
            try:
                if client is None:
                    async with httpx.AsyncClient(timeout=FETCH_TIMEOUT) as own_client:
                        return await fetch_image(url, own_client)
                return await fetch_image(url, client)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[images] Failed to fetch {url[:80]}: {e}")
                continue
        logger.warning(f"[images] Unsupported image URL: {url[:50]}...")
    return None


def _user_image_parts(messages: list[Message]):
    for msg in messages:
        if msg.role != "user" or not isinstance(msg.content, list):
            continue
        for part in msg.content:
            if isinstance(part, ImageUrlContent):
                yield part


def extract_text_from_content(content: str | list[ContentPart] | None) -> str:
    """Extract text from message content for logging.

    Images are replaced with placeholder text so logs stay readable.
    """
    if content is None:
        return ""
    if isinstance(content, str):
        return content

    parts = []
    for part in content:
        if isinstance(part, TextContent):
            parts.append(part.text)
        elif isinstance(part, ImageUrlContent):
            url = part.image_url.url
            if is_data_url(url):
                parts.append("[image: base64 data]")
            else:
                parts.append(f"[image: {url}]")

    return " ".join(parts)
