from __future__ import annotations

import logging

from .caches import RecentlyClosed
from .tracker import TabItem, TabTracker
from .urls import should_ignore_url, strip_fragment

logger = logging.getLogger(__name__)


def resolve_chain(url: str, chain: dict[str, str]) -> str:
    """Walk a target -> source redirect chain back to its earliest source."""

    seen = {url}
    while url in chain:
        url = chain[url]
        if url in seen:
            break
        seen.add(url)
    return url


class RedirectResolver:
    """Collapses redirects and same-page navigation into one canonical URL per tab.

    Server-side redirects arrive as (source, target) pairs before the load
    completes. Client-side redirects are guessed: a tab that starts loading
    again shortly after completing is assumed to be redirecting away from its
    canonical URL.
    """

    def __init__(
        self,
        tracker: TabTracker,
        recent: RecentlyClosed,
        *,
        redirect_delay_ms: int,
    ) -> None:
        self.tracker = tracker
        self.recent = recent
        self.redirect_delay_ms = redirect_delay_ms

    def on_loading(self, tab_id: int, url: str | None, *, now: int) -> TabItem:
        item = self.tracker.get(tab_id)
        if item.redirect_target:
            return item
        if (
            item.canonical_url
            and item.update_time is not None
            and now - item.update_time < self.redirect_delay_ms
        ):
            item.redirect_target = item.canonical_url
            item.assumed_redirect = True
            logger.debug(
                "[loading] tab %s assumed redirection from %s", tab_id, item.redirect_target
            )
        else:
            item.redirect_target = url
            logger.debug("[loading] tab %s potential redirection from %s", tab_id, url)
        return item

    def on_redirect(self, tab_id: int, source_url: str, target_url: str) -> TabItem:
        item = self.tracker.get(tab_id)
        item.redirect_chain[target_url] = source_url
        logger.debug("[redirect] tab %s server-side %s -> %s", tab_id, source_url, target_url)
        return item

    def on_complete(self, tab_id: int, url: str, *, now: int) -> TabItem:
        item = self.tracker.get(tab_id)

        if item.redirect_chain and not item.assumed_redirect:
            origin = resolve_chain(url, item.redirect_chain)
            if origin != url and not should_ignore_url(origin):
                logger.debug("[complete] tab %s server-side redirection source %s", tab_id, origin)
                item.redirect_target = origin

        target = item.redirect_target
        if should_ignore_url(target):
            target = None

        if item.url is None:
            if not item.canonical_url and target:
                item.canonical_url = target
        elif item.url != url:
            if strip_fragment(item.url) == strip_fragment(url):
                logger.debug("[complete] tab %s ignoring fragment change", tab_id)
                if not item.canonical_url:
                    item.canonical_url = item.url
            elif item.assumed_redirect:
                logger.debug("[complete] tab %s assumed redirection %s -> %s", tab_id, item.url, url)
            else:
                logger.debug("[complete] tab %s manual navigation %s -> %s", tab_id, item.url, url)
                self.recent.track([item.canonical_url, item.url], now=now)
                item.provenance = None
                item.canonical_url = target

        item.update_time = now
        item.url = url
        item.clear_transient()
        logger.debug(
            "[complete] tab %s url %s canonical %s", tab_id, item.url, item.canonical_url
        )
        return item
