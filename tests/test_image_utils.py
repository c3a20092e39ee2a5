"""
Unit tests for image extraction from vision messages.

Usage:
- pytest tests/test_image_utils.py -v
"""

import base64

import httpx
import pytest

from openaibridge.image_utils import (
    ImageAttachment,
    extract_first_image,
    extract_text_from_content,
    fetch_image,
    is_data_url,
    is_http_url,
    media_type_to_format,
    parse_data_url,
)
from openaibridge.models import ImageUrl, ImageUrlContent, Message, TextContent

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def image_part(url: str) -> ImageUrlContent:
    return ImageUrlContent(type="image_url", image_url=ImageUrl(url=url))


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.unit
class TestParseDataUrl:
    """Tests for parse_data_url function."""

    def test_valid_png(self):
        """Valid PNG data URL parses correctly."""
        assert parse_data_url("data:image/png;base64,iVBORw0KGgo=") == ("image/png", "iVBORw0KGgo=")

    def test_invalid_format(self):
        """Invalid data URL raises ValueError."""
        with pytest.raises(ValueError, match="Invalid data URL format"):
            parse_data_url("not-a-data-url")

    def test_missing_base64_marker(self):
        """Data URL without base64 marker raises ValueError."""
        with pytest.raises(ValueError):
            parse_data_url("data:image/png,rawdata")


@pytest.mark.unit
class TestUrlHelpers:
    """Tests for URL classification and format mapping."""

    def test_url_kinds(self):
        assert is_http_url("https://example.com/a.png")
        assert is_http_url("http://example.com/a.png")
        assert not is_http_url("data:image/png;base64,abc")
        assert is_data_url("data:image/png;base64,abc")

    @pytest.mark.parametrize("media_type,fmt", [
        ("image/png", "png"),
        ("image/jpeg", "jpeg"),
        ("image/jpg", "jpeg"),
        ("image/webp; charset=binary", "webp"),
    ])
    def test_media_type_to_format(self, media_type, fmt):
        assert media_type_to_format(media_type) == fmt


@pytest.mark.unit
class TestFetchImage:
    """Tests for downloading HTTP(S) images."""

    @pytest.mark.asyncio
    async def test_format_from_content_type(self):
        """The Content-Type header decides the format."""
        def handler(request):
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

        async with mock_client(handler) as client:
            image = await fetch_image("https://example.com/cat", client)
        assert image == ImageAttachment(data=base64.b64encode(PNG_BYTES).decode(), format="png")

    @pytest.mark.asyncio
    async def test_format_from_extension(self):
        """Without an image Content-Type the URL extension is used."""
        def handler(request):
            return httpx.Response(200, content=b"x", headers={"content-type": "application/octet-stream"})

        async with mock_client(handler) as client:
            image = await fetch_image("https://example.com/cat.JPG?size=large", client)
        assert image.format == "jpeg"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        """Error statuses raise httpx.HTTPStatusError."""
        async with mock_client(lambda request: httpx.Response(404)) as client:
            with pytest.raises(httpx.HTTPStatusError):
                await fetch_image("https://example.com/missing.png", client)


@pytest.mark.unit
class TestExtractFirstImage:
    """Tests for picking the image passed to the session bridge."""

    @pytest.mark.asyncio
    async def test_no_images(self):
        assert await extract_first_image([Message(role="user", content="Hi")]) is None

    @pytest.mark.asyncio
    async def test_data_url(self):
        """Data URLs are used without any download."""
        messages = [Message(role="user", content=[image_part("data:image/jpeg;base64,QUJD")])]
        assert await extract_first_image(messages) == ImageAttachment(data="QUJD", format="jpeg")

    @pytest.mark.asyncio
    async def test_assistant_images_ignored(self):
        """Only user messages are searched."""
        messages = [
            Message(role="assistant", content=[image_part("data:image/png;base64,AAA")]),
            Message(role="user", content=[image_part("data:image/png;base64,BBB")]),
        ]
        image = await extract_first_image(messages)
        assert image.data == "BBB"

    @pytest.mark.asyncio
    async def test_failed_fetch_skipped(self):
        """A failed download falls through to the next image."""
        def handler(request):
            if request.url.path == "/broken.png":
                return httpx.Response(500)
            return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

        messages = [Message(role="user", content=[
            image_part("https://example.com/broken.png"),
            image_part("https://example.com/ok.png"),
        ])]
        async with mock_client(handler) as client:
            image = await extract_first_image(messages, client)
        assert image.data == base64.b64encode(PNG_BYTES).decode()

    @pytest.mark.asyncio
    async def test_all_fetches_fail(self):
        """When nothing can be fetched no image is attached."""
        messages = [Message(role="user", content=[image_part("https://example.com/a.png")])]
        async with mock_client(lambda request: httpx.Response(503)) as client:
            assert await extract_first_image(messages, client) is None

    @pytest.mark.asyncio
    async def test_unsupported_scheme_skipped(self):
        messages = [Message(role="user", content=[
            image_part("ftp://example.com/a.png"),
            image_part("data:image/png;base64,OK"),
        ])]
        image = await extract_first_image(messages)
        assert image.data == "OK"


@pytest.mark.unit
class TestExtractTextFromContent:
    """Tests for log-friendly content rendering."""

    def test_string(self):
        assert extract_text_from_content("Hello") == "Hello"

    def test_none(self):
        assert extract_text_from_content(None) == ""

    def test_placeholders(self):
        """Images are replaced with placeholders."""
        content = [
            TextContent(type="text", text="Look"),
            image_part("data:image/png;base64,abc"),
            image_part("https://example.com/a.png"),
        ]
        assert extract_text_from_content(content) == (
            "Look [image: base64 data] [image: https://example.com/a.png]"
        )
