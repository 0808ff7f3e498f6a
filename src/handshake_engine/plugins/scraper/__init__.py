"""Keyless scraper protocol module.

Implements the ``scraper`` protocol type for public pages that need no
credentials, with polite defaults (user agent, request delay, robots.txt).

See Also:
    :class:`~handshake_engine.plugins.scraper.plugin.ScraperModule`
    :mod:`handshake_engine.auth.base` for the module contract.
"""

from handshake_engine.plugins.scraper.plugin import ScraperModule

__all__ = ["ScraperModule"]
