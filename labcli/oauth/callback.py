"""Loopback callback server for the OAuth redirect.

A fresh server is created for every login attempt. It:
- binds the loopback redirect address before the browser is opened
- services exactly one redirect on the callback path, then stops listening
- checks the anti-CSRF state and hands the code to the token exchange
- delivers the outcome once, through a future awaited by the login flow
- is torn down on success, failure, timeout or cancellation
"""

import asyncio
import hmac
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any, Awaitable, Callable
from urllib.parse import parse_qs, urlparse

from .tokens import AuthToken

logger = logging.getLogger(__name__)

CALLBACK_HOST = "127.0.0.1"
CALLBACK_HOST_V6 = "::1"
CALLBACK_PORT = 7171
CALLBACK_PATH = "/auth/redirect"
REDIRECT_URI = f"http://localhost:{CALLBACK_PORT}{CALLBACK_PATH}"

DEFAULT_TIMEOUT = 300  # seconds

SUCCESS_MESSAGE = "You have authenticated successfully. You can now close this browser window."


class CallbackError(Exception):
    """The authorization redirect did not yield a usable code."""

    pass


class StateMismatchError(CallbackError):
    """The redirect carried a state value that this attempt did not issue."""

    pass


class AuthorizationDeniedError(CallbackError):
    """The provider redirected back with an error instead of a code."""

    pass


class CallbackTimeoutError(CallbackError):
    """No redirect arrived before the deadline."""

    pass


@dataclass
class CallbackResult:
    """Query parameters of a redirect request."""

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None


PAGE_HTML = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>labcli: {title}</title>
    <style>
        body {{ font-family: system-ui, sans-serif; margin: 15vh auto; max-width: 32em; color: #222; }}
        h1 {{ font-size: 1.4em; }}
        code {{ background: #f4f4f4; padding: 0.2em 0.4em; border-radius: 4px; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <p>{message}</p>
</body>
</html>"""


def render_page(title: str, message: str) -> str:
    """Render the page shown in the browser. Both values are HTML-escaped."""
    return PAGE_HTML.format(title=html.escape(title), message=html.escape(message))


def parse_callback_url(url: str) -> CallbackResult:
    """Extract code, state and error parameters from a redirect request target."""
    params = parse_qs(urlparse(url).query)

    def first(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=first("code"),
        state=first("state"),
        error=first("error"),
        error_description=first("error_description"),
    )


def check_callback(result: CallbackResult, expected_state: str) -> str:
    """Validate a redirect and return its authorization code.

    Raises:
        AuthorizationDeniedError: If the provider returned an error
        StateMismatchError: If state differs from expected_state
        CallbackError: If no code was supplied
    """
    if result.error:
        raise AuthorizationDeniedError(
            f"authorization denied: {result.error} - {result.error_description or 'no description'}"
        )

    if not hmac.compare_digest((result.state or "").encode(), expected_state.encode()):
        raise StateMismatchError("invalid state in authorization redirect")

    if not result.code:
        raise CallbackError("authorization redirect carried no code")

    return result.code


class LocalhostCallbackServer:
    """Single-shot HTTP listener for the authorization redirect.

    Usage:
        async with LocalhostCallbackServer(exchange, state) as server:
            open_browser(build_url(redirect_uri=server.redirect_uri))
            token = await server.wait_for_callback()

    Args:
        exchange: Coroutine function turning an authorization code into a token
        expected_state: The state value sent in the authorization request
        host: Loopback address to bind
        port: Port to bind (0 picks a free port)
        path: Redirect path
        timeout: Seconds to wait for the redirect, None to wait forever
        on_status: Receives operator-facing error messages
    """

    def __init__(
        self,
        exchange: Callable[[str], Awaitable[AuthToken]],
        expected_state: str,
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
        path: str = CALLBACK_PATH,
        timeout: float | None = DEFAULT_TIMEOUT,
        on_status: Callable[[str], None] | None = None,
    ):
        self.exchange = exchange
        self.expected_state = expected_state
        self.host = host
        self.port = port
        self.path = path
        self.timeout = timeout
        self.on_status = on_status or (lambda msg: None)
        self.redirect_uri = ""

        self._servers: list[asyncio.Server] = []
        self._stopping = False
        self._result: asyncio.Future[AuthToken] | None = None
        self._claimed = False
        self._handlers: set[asyncio.Task[Any]] = set()

    @property
    def is_listening(self) -> bool:
        return any(server.is_serving() for server in self._servers)

    async def start(self) -> str:
        """Bind the listener and return the redirect URI it serves.

        The redirect URI names ``localhost``, so when binding the IPv4
        loopback the same port is also bound on ``::1`` where available.

        Raises:
            CallbackError: If the address cannot be bound
        """
        self._result = asyncio.get_running_loop().create_future()
        self._claimed = False
        self._stopping = False

        try:
            server = await asyncio.start_server(self._handle_connection, self.host, self.port)
        except OSError as e:
            raise CallbackError(
                f"could not listen on {self.host}:{self.port} for the OAuth redirect: {e}"
            ) from e
        self._servers = [server]
        self.port = server.sockets[0].getsockname()[1]

        if self.host == CALLBACK_HOST:
            try:
                self._servers.append(
                    await asyncio.start_server(self._handle_connection, CALLBACK_HOST_V6, self.port)
                )
            except OSError as e:
                logger.debug(f"Not listening on [{CALLBACK_HOST_V6}]:{self.port}: {e}")

        self.redirect_uri = f"http://localhost:{self.port}{self.path}"

        logger.debug(f"Callback server listening on {self.host}:{self.port}{self.path}")
        return self.redirect_uri

    def _close_listeners(self) -> None:
        for server in self._servers:
            server.close()

    async def stop(self) -> None:
        """Close the listener, abort in-flight handlers and release the port."""
        if not self._servers:
            return

        self._stopping = True
        self._close_listeners()
        for task in list(self._handlers):
            task.cancel()
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)
        for server in self._servers:
            await server.wait_closed()
        self._servers = []

        if self._result is not None and not self._result.done():
            self._result.cancel()

        logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> AuthToken:
        """Wait for the redirect to be serviced and return the exchanged token.

        Raises:
            CallbackTimeoutError: If the deadline passes first
            CallbackError: For redirect validation failures
            Exception: Whatever the exchange raised
        """
        if self._result is None:
            raise CallbackError("callback server not started")

        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"timed out after {self.timeout:g} seconds waiting for the browser to complete authentication"
            ) from None

    def _complete(self, token: AuthToken | None = None, error: BaseException | None = None) -> None:
        if self._result is None or self._result.done():
            return
        if error is not None:
            self._result.set_exception(error)
        else:
            self._result.set_result(token)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)

        claimed_here = False
        try:
            request_line = (await reader.readline()).decode("utf-8", errors="replace")
            parts = request_line.strip().split(" ")

            # Headers are not needed, but must be consumed
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            if len(parts) < 2:
                await self._send(writer, HTTPStatus.BAD_REQUEST, "Invalid request", "The request could not be parsed.")
                return

            method, target = parts[0], parts[1]

            if urlparse(target).path != self.path:
                await self._send(writer, HTTPStatus.NOT_FOUND, "Not found", "Nothing to see here.")
                return

            if method != "GET":
                await self._send(writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed", "Use GET.")
                return

            if self._claimed:
                await self._send(
                    writer, HTTPStatus.GONE, "Already completed",
                    "This login attempt has already been handled.",
                )
                return

            # One redirect per attempt: stop accepting new connections now
            self._claimed = claimed_here = True
            self._close_listeners()

            await self._service_redirect(writer, target)

        except asyncio.CancelledError:
            # stop() cancels the result itself
            if claimed_here and not self._stopping:
                self._complete(error=CallbackError("login attempt cancelled"))
            raise
        except Exception as e:
            logger.warning(f"Error handling callback request: {e}")
            if claimed_here:
                self._complete(error=CallbackError(f"error handling the OAuth redirect: {e}"))
        finally:
            if task is not None:
                self._handlers.discard(task)
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def _service_redirect(self, writer: asyncio.StreamWriter, target: str) -> None:
        result = parse_callback_url(target)

        try:
            code = check_callback(result, self.expected_state)
        except CallbackError as e:
            self.on_status(f"Error: {e}")
            await self._send(writer, HTTPStatus.BAD_REQUEST, "Authentication failed", str(e))
            self._complete(error=e)
            return

        try:
            token = await self.exchange(code)
        except Exception as e:
            # Relayed to wait_for_callback(); the browser still gets a page
            self.on_status(f"Error occurred requesting access token: {e}")
            await self._send(
                writer, HTTPStatus.BAD_GATEWAY, "Authentication failed",
                "The access token could not be obtained. Check the terminal for details.",
            )
            self._complete(error=e)
            return

        await self._send(writer, HTTPStatus.OK, "Authenticated", SUCCESS_MESSAGE)
        self._complete(token=token)

    async def _send(self, writer: asyncio.StreamWriter, status: HTTPStatus, title: str, message: str) -> None:
        body = render_page(title, message).encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Cache-Control: no-store\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        try:
            writer.write(headers.encode("utf-8") + body)
            await writer.drain()
        except ConnectionError as e:
            logger.debug(f"Browser closed the connection before the response was sent: {e}")

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
