"""Unit tests for the HTTP fetcher module.

Tests binary content-type skipping, JS-shell detection, transient versus
permanent error classification, and successful fetches using mocked httpx
responses.
"""

from __future__ import annotations

import httpx
import pytest
import respx

from product_scraper.core.exceptions import NetworkError, RequestTimeoutError
from product_scraper.scraper.config import USER_AGENT
from product_scraper.scraper.http_fetcher import (
    FetchResult,
    _is_binary_content_type,
    _is_js_shell,
    build_client,
    fetch_url,
    raise_for_transient,
)

ARTICLE = "<html><body>" + ("word " * 200) + "</body></html>"


# ---------------------------------------------------------------------------
# Unit tests for helper functions
# ---------------------------------------------------------------------------


class TestIsBinaryContentType:
    def test_pdf_is_binary(self) -> None:
        assert _is_binary_content_type("application/pdf") is True

    def test_image_is_binary(self) -> None:
        assert _is_binary_content_type("image/png") is True
        assert _is_binary_content_type("image/jpeg") is True

    def test_html_not_binary(self) -> None:
        assert _is_binary_content_type("text/html; charset=utf-8") is False

    def test_json_not_binary(self) -> None:
        assert _is_binary_content_type("application/json") is False

    def test_vnd_is_binary(self) -> None:
        assert _is_binary_content_type("application/vnd.ms-excel") is True


class TestIsJsShell:
    def test_empty_is_js_shell(self) -> None:
        assert _is_js_shell("") is True

    def test_short_body_is_js_shell(self) -> None:
        assert _is_js_shell('<html><body><div id="root"></div></body></html>') is True

    def test_real_page_not_js_shell(self) -> None:
        assert _is_js_shell(ARTICLE) is False


class TestRaiseForTransient:
    def test_success_passes_through(self) -> None:
        result = FetchResult(html=ARTICLE, status_code=200, final_url="https://a.test/", error=None)
        assert raise_for_transient(result) is result
        assert result.ok is True

    def test_permanent_failure_passes_through(self) -> None:
        result = FetchResult(html=None, status_code=404, final_url="https://a.test/", error="HTTP 404")
        assert raise_for_transient(result) is result
        assert result.ok is False

    def test_transient_raises_network_error(self) -> None:
        result = FetchResult(
            html=None, status_code=503, final_url="https://a.test/", error="HTTP 503", transient=True
        )
        with pytest.raises(NetworkError) as exc_info:
            raise_for_transient(result)
        assert exc_info.value.status_code == 503
        assert exc_info.value.url == "https://a.test/"

    def test_timeout_raises_request_timeout(self) -> None:
        result = FetchResult(
            html=None,
            status_code=None,
            final_url="https://a.test/",
            error="timeout",
            transient=True,
            timed_out=True,
        )
        with pytest.raises(RequestTimeoutError):
            raise_for_transient(result)


# ---------------------------------------------------------------------------
# Integration tests using respx (mock httpx)
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFetchUrl:
    async def test_successful_fetch(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/product").mock(
                return_value=httpx.Response(
                    200,
                    text=ARTICLE,
                    headers={"content-type": "text/html; charset=utf-8"},
                )
            )
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/product", client=client, timeout=5.0)

        assert result.ok is True
        assert result.status_code == 200
        assert result.html == ARTICLE
        assert result.needs_browser is False
        assert result.transient is False

    async def test_redirect_records_final_url(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/old").mock(
                return_value=httpx.Response(301, headers={"location": "https://example.com/new"})
            )
            mock.get("/new").mock(
                return_value=httpx.Response(200, text=ARTICLE, headers={"content-type": "text/html"})
            )
            async with httpx.AsyncClient(follow_redirects=True) as client:
                result = await fetch_url("https://example.com/old", client=client, timeout=5.0)

        assert result.ok is True
        assert result.final_url == "https://example.com/new"

    async def test_http_404_is_permanent(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/missing").mock(return_value=httpx.Response(404))
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/missing", client=client, timeout=5.0)

        assert result.ok is False
        assert result.error == "HTTP 404"
        assert result.transient is False

    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_retryable_status_is_transient(self, status: int) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/busy").mock(return_value=httpx.Response(status))
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/busy", client=client, timeout=5.0)

        assert result.transient is True
        assert result.status_code == status

    async def test_binary_content_type_skipped(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/manual.pdf").mock(
                return_value=httpx.Response(
                    200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"}
                )
            )
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/manual.pdf", client=client, timeout=5.0)

        assert result.ok is False
        assert result.transient is False
        assert "binary content-type" in (result.error or "")

    async def test_js_shell_sets_needs_browser(self) -> None:
        shell = '<html><body><div id="root"></div><script src="/app.js"></script></body></html>'
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/spa").mock(
                return_value=httpx.Response(200, text=shell, headers={"content-type": "text/html"})
            )
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/spa", client=client, timeout=5.0)

        assert result.ok is True
        assert result.needs_browser is True

    async def test_timeout_is_transient(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/slow").mock(side_effect=httpx.ReadTimeout("timed out"))
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/slow", client=client, timeout=1.0)

        assert result.error == "timeout"
        assert result.transient is True
        assert result.timed_out is True

    async def test_connection_error_is_transient(self) -> None:
        with respx.mock(base_url="https://example.com") as mock:
            mock.get("/down").mock(side_effect=httpx.ConnectError("connection refused"))
            async with httpx.AsyncClient() as client:
                result = await fetch_url("https://example.com/down", client=client, timeout=1.0)

        assert result.transient is True
        assert result.timed_out is False
        assert (result.error or "").startswith("request error")


@pytest.mark.asyncio
class TestBuildClient:
    async def test_client_defaults(self) -> None:
        async with build_client(7.5, max_connections=4) as client:
            assert client.headers["User-Agent"] == USER_AGENT
            assert client.follow_redirects is True
            assert client.timeout.read == 7.5
