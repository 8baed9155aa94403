"""Authorization callback parameters and a localhost callback server.

The authorization server redirects the browser back to the client's
redirect URL with ``code``, ``state`` and ``iss`` query parameters (or
``error``/``error_description`` when the user denied the request).

LocalhostCallbackServer is the redirect target for the command line login:
an ephemeral HTTP server on 127.0.0.1 that captures one callback and shows
the user a short HTML page.
"""

import asyncio
import html
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger(__name__)

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 300  # seconds

CALLBACK_PATH = "/callback"


class CallbackError(Exception):
    """Error while receiving the authorization callback."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for the authorization callback."""

    pass


@dataclass
class CallbackParameters:
    """Query parameters returned by the authorization server.

    Attributes:
        code: The authorization code
        state: The state value sent with the authorization request
        iss: The issuer identifier of the authorization server
        error: Error code if authorization failed
        error_description: Human-readable error description
    """

    code: str | None = None
    state: str | None = None
    iss: str | None = None
    error: str | None = None
    error_description: str | None = None

    def is_success(self) -> bool:
        """Check if the callback carries a code and no error."""
        return self.code is not None and self.error is None

    @classmethod
    def from_query(cls, query: Mapping[str, Any]) -> "CallbackParameters":
        """Build from a query mapping.

        Values may be plain strings or lists of strings (as returned by
        ``urllib.parse.parse_qs``); for lists the first value is used.
        """

        def get_param(name: str) -> str | None:
            value = query.get(name)
            if isinstance(value, (list, tuple)):
                return value[0] if value else None
            return value

        return cls(
            code=get_param("code"),
            state=get_param("state"),
            iss=get_param("iss"),
            error=get_param("error"),
            error_description=get_param("error_description"),
        )


def parse_callback_url(url: str) -> CallbackParameters:
    """Parse callback parameters from a redirect URL or request path."""
    return CallbackParameters.from_query(parse_qs(urlparse(url).query))


RESULT_HTML = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>{title}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; margin: 4em auto; max-width: 32em; }}
        .detail {{ font-family: monospace; color: #a33; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <p>{message}</p>
    {detail}
</body>
</html>"""


def render_result_page(params: CallbackParameters) -> str:
    """Render the page shown in the browser after the redirect."""
    if params.is_success():
        return RESULT_HTML.format(
            title="Signed in",
            message="You can close this window and return to the terminal.",
            detail="",
        )
    # Escape server-supplied values
    detail = '<p class="detail">{}: {}</p>'.format(
        html.escape(params.error or "unknown_error"),
        html.escape(params.error_description or "No description provided"),
    )
    return RESULT_HTML.format(
        title="Sign in failed",
        message="The request failed. Please try again.",
        detail=detail,
    )


class LocalhostCallbackServer:
    """Ephemeral HTTP server that receives one authorization callback.

    Usage:
        async with LocalhostCallbackServer() as server:
            redirect_url = server.redirect_url
            # Send the browser to the login URL built with redirect_url
            params = await server.wait_for_callback()
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, path: str = CALLBACK_PATH):
        self.timeout = timeout
        self.path = path
        self.port: int = 0
        self.base_url: str = ""
        self.redirect_url: str = ""

        self._server: asyncio.Server | None = None
        self._result: CallbackParameters | None = None
        self._result_event: asyncio.Event | None = None

    async def start(self) -> str:
        """Start listening on an OS-assigned port.

        Returns:
            The redirect URL to use in the authorization request
        """
        self._result_event = asyncio.Event()
        self._server = await asyncio.start_server(self._handle_connection, "127.0.0.1", 0)

        sockets = self._server.sockets
        if not sockets:
            raise CallbackError("Failed to start callback server: no sockets created")

        self.port = sockets[0].getsockname()[1]
        self.base_url = f"http://127.0.0.1:{self.port}"
        self.redirect_url = f"{self.base_url}{self.path}"

        logger.debug(f"Callback server listening on {self.redirect_url}")
        return self.redirect_url

    async def stop(self) -> None:
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackParameters:
        """Wait for the browser to be redirected back.

        Raises:
            CallbackTimeoutError: If no callback arrives within the timeout
        """
        if self._result_event is None:
            raise CallbackError("Server not started")

        try:
            await asyncio.wait_for(self._result_event.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"Timeout waiting for authorization callback after {self.timeout} seconds"
            ) from None

        if self._result is None:
            raise CallbackError("No callback result received")

        return self._result

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")
            parts = request_line.strip().split(" ")
            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, path = parts[0], parts[1]

            # Headers are not needed
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed")
                return

            if urlparse(path).path != self.path:
                await self._send(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            # Only the first callback counts
            if self._result is not None:
                await self._send(writer, HTTPStatus.CONFLICT, "Callback already received")
                return

            self._result = parse_callback_url(path)
            await self._send(
                writer,
                HTTPStatus.OK,
                render_result_page(self._result),
                content_type="text/html; charset=utf-8",
            )

            if self._result_event:
                self._result_event.set()

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    async def _send(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
        content_type: str = "text/plain; charset=utf-8",
    ) -> None:
        payload = body.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: {content_type}\r\n"
            f"Content-Length: {len(payload)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + payload)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
