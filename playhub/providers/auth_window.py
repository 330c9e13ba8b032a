"""
Browser surface used by interactive provider logins.

The desktop shell supplies its own embedded-browser implementation; anything
satisfying ``AuthWindow`` works. ``ConsoleAuthWindow`` is the fallback used by
the command line entry point: it opens the system browser and asks the user to
paste the address they were redirected to.
"""

import asyncio
import webbrowser
from typing import Dict, Optional, Protocol

import msgspec

from ..logger import setup_logger

logger = setup_logger()


class AuthRedirect(msgspec.Struct):
    """Where the login flow ended up, plus any cookies the browser collected."""
    url: str
    cookies: Dict[str, str] = {}


class AuthWindow(Protocol):
    async def open(
        self,
        url: str,
        redirect_prefix: str,
        *,
        interactive: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[AuthRedirect]:
        """
        Load ``url`` and resolve once navigation reaches ``redirect_prefix``.

        Returns None if the user closed the window or ``timeout`` elapsed.
        With interactive=False nothing is shown; the flow must complete from
        existing browser state (silent refresh).
        """
        ...


class ConsoleAuthWindow:
    def __init__(self, prompt=input):
        self._prompt = prompt

    async def open(
        self,
        url: str,
        redirect_prefix: str,
        *,
        interactive: bool = True,
        timeout: Optional[float] = None,
    ) -> Optional[AuthRedirect]:
        if not interactive:
            # No persistent browser session to reuse
            return None

        await asyncio.to_thread(webbrowser.open, url)
        try:
            pasted = await asyncio.wait_for(
                asyncio.to_thread(self._prompt, "Paste the address you were redirected to: "),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Login timed out waiting for redirect")
            return None

        pasted = (pasted or "").strip()
        if not pasted.startswith(redirect_prefix):
            logger.info("Login window closed without reaching the redirect")
            return None
        return AuthRedirect(url=pasted)
