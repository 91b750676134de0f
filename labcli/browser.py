"""Launch the operator's web browser."""

import logging
import shlex
import subprocess
import webbrowser

logger = logging.getLogger(__name__)


class BrowserLaunchError(Exception):
    """The browser could not be opened. Callers should fall back to printing the URL."""

    pass


def open_in_browser(url: str, browser: str | None = None) -> None:
    """Open url in a browser.

    Args:
        url: The page to open
        browser: Optional command overriding the system default, for example
            "firefox --new-window". The URL is appended as the last argument.

    Raises:
        BrowserLaunchError: If the browser could not be started
    """
    if browser:
        args = shlex.split(browser) + [url]
        logger.debug(f"Launching browser command {args[0]!r}")
        try:
            subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as e:
            raise BrowserLaunchError(f"could not run browser {args[0]!r}: {e}") from e
        return

    try:
        opened = webbrowser.open(url)
    except webbrowser.Error as e:
        raise BrowserLaunchError(str(e)) from e

    if not opened:
        raise BrowserLaunchError("no usable browser found")
