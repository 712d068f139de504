"""
Byte stream utilities

Adapts files, HTTP responses and in-memory iterables into async chunk
iterators, with retry logic for opening remote XMLTV sources.
"""
import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiofiles
import httpx


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 65536


async def _backoff(delay: float) -> None:
    await asyncio.sleep(delay)


async def iter_byte_chunks(source: Any, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """
    Iterate a byte source chunk by chunk.

    Accepted sources: async iterables of bytes (e.g. ``response.aiter_bytes()``),
    objects exposing ``read(n)`` (sync or async, e.g. aiofiles handles), and
    plain iterables of bytes. Empty chunks are skipped.

    Raises:
        TypeError: If the source is a bare bytes/str value or yields text
    """
    if isinstance(source, (bytes, bytearray, str)):
        raise TypeError("Expected a byte stream, not an in-memory document")

    if hasattr(source, "__aiter__"):
        async for chunk in source:
            if chunk:
                yield _ensure_bytes(chunk)
        return

    if hasattr(source, "read"):
        while True:
            data = source.read(chunk_size)
            if inspect.isawaitable(data):
                data = await data
            if not data:
                return
            yield _ensure_bytes(data)

    if isinstance(source, Iterable):
        for chunk in source:
            if chunk:
                yield _ensure_bytes(chunk)
        return

    raise TypeError(f"Unsupported stream source: {type(source).__name__}")


def _ensure_bytes(chunk: Any) -> bytes:
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    raise TypeError(f"Stream yielded {type(chunk).__name__}, expected bytes")


async def open_file_stream(path: Path | str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> AsyncIterator[bytes]:
    """Read a local XMLTV file in binary chunks without loading it whole."""
    logger.debug("Opening XMLTV file: %s", path)
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _retry_after_seconds(response: httpx.Response, fallback: float) -> float:
    value = response.headers.get("Retry-After")
    if value is None:
        return fallback
    try:
        return max(0.0, float(value))
    except ValueError:
        return fallback


async def _send_with_retry(
    client: httpx.AsyncClient,
    url: str,
    max_retries: int,
    backoff_factor: float,
) -> httpx.Response:
    """
    Open a streaming GET request with exponential backoff retry logic

    Retries on transient network errors, HTTP 429 (honouring Retry-After)
    and 5xx responses. Does NOT retry on other 4xx HTTP errors.

    Raises:
        httpx.HTTPError: If the request fails after all retries
    """
    last_error: Exception | None = None

    for attempt in range(max_retries + 1):
        wait_time = backoff_factor ** attempt
        try:
            request = client.build_request("GET", url)
            response = await client.send(request, stream=True)
        except (httpx.TimeoutException, httpx.ConnectError) as e:
            last_error = e
            if attempt < max_retries:
                logger.warning(
                    f"Request attempt {attempt + 1}/{max_retries + 1} failed (transient error): {type(e).__name__}. "
                    f"Retrying in {wait_time:.1f}s..."
                )
                await _backoff(wait_time)
                continue
            logger.error(f"Request failed after {max_retries + 1} attempts (transient error)")
            raise

        if response.is_success:
            return response

        await response.aclose()
        status = response.status_code
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if status != 429 and 400 <= status < 500:
                logger.error(f"HTTP {status} (client error): {e}")
                raise
            last_error = e

        if attempt >= max_retries:
            logger.error(f"Request failed after {max_retries + 1} attempts (HTTP {status})")
            break

        if status == 429:
            wait_time = _retry_after_seconds(response, wait_time)
            logger.warning(
                f"Rate limited (429), retrying after {wait_time:.1f}s (attempt {attempt + 1}/{max_retries})"
            )
        else:
            logger.warning(
                f"Request attempt {attempt + 1}/{max_retries + 1} failed "
                f"(HTTP {status} server error). Retrying in {wait_time:.1f}s..."
            )
        await _backoff(wait_time)

    if last_error:
        raise last_error

    raise RuntimeError(f"Failed to open {url} after {max_retries + 1} attempts")


@asynccontextmanager
async def open_http_stream(
    url: str,
    *,
    client: httpx.AsyncClient | None = None,
    timeout: float = 120.0,
    max_retries: int = 3,
    backoff_factor: float = 2.0,
    user_agent: str | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> AsyncIterator[AsyncIterator[bytes]]:
    """
    Open an XMLTV URL and yield its body as an async byte iterator.

    The response body is never buffered whole; the connection is released
    when the context exits.

    Args:
        url: Source URL
        client: Optional shared client (not closed on exit)
        timeout: HTTP timeout in seconds when a client is created here
        max_retries: Retries after the first attempt
        backoff_factor: Exponential backoff multiplier (wait = backoff_factor ^ attempt)
        user_agent: User-Agent header when a client is created here
        chunk_size: Body chunk size in bytes
    """
    owns_client = client is None
    if client is None:
        headers = {"Accept": "application/xml, text/xml, */*"}
        if user_agent:
            headers["User-Agent"] = user_agent
        client = httpx.AsyncClient(timeout=timeout, follow_redirects=True, headers=headers)

    try:
        response = await _send_with_retry(client, url, max_retries, backoff_factor)
        logger.info(
            "Streaming %s (content-length: %s)",
            sanitize_url_for_logging(url),
            response.headers.get("Content-Length", "unknown"),
        )
        try:
            yield response.aiter_bytes(chunk_size)
        finally:
            await response.aclose()
    finally:
        if owns_client:
            await client.aclose()


def sanitize_url_for_logging(url: str) -> str:
    """Remove credentials from URL for safe logging."""
    if "://" not in url:
        return url
    try:
        protocol, rest = url.split("://", 1)
        if "@" in rest:
            rest = rest.split("@", 1)[1]
            return f"{protocol}://***:***@{rest}"
        if "password=" in rest:
            head, _, _ = rest.partition("?")
            return f"{protocol}://{head}?***"
        return url
    except (ValueError, IndexError):
        return url
