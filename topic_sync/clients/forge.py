"""
Allora Forge client.

Forge hosts the competitions bound to topics and their leaderboards.
Competitions have no JSON API of their own; the listing is read from the
Next.js data route of the competitions page, whose build id is scraped
from the page HTML first.

API Endpoints:
- /competitions (HTML, carries the Next.js buildId)
- /_next/data/{build_id}/competitions.json
- /api/upshot-api-proxy/allora/forge/competition/{id}/leaderboard
"""
import re
from typing import Any, Optional

import structlog
from pydantic import ValidationError

from topic_sync.clients.base import BaseAPIClient
from topic_sync.errors import DecodeFailure, FetchFailure
from topic_sync.models import Competition, CompetitionListing, LeaderboardEntry, LeaderboardPage

logger = structlog.get_logger()

BUILD_ID_PATTERN = re.compile(r'"buildId":"([^"]+)"')


class ForgeClient(BaseAPIClient):
    """Client for Allora Forge competitions and leaderboards."""

    NAME = "forge"

    def _get_default_base_url(self) -> str:
        return self._settings.forge_base_url

    def _get_default_rate_limit(self) -> float:
        return self._settings.forge_rate_limit_rps

    def _get_headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json, text/html;q=0.9",
            "User-Agent": "allora-topic-sync",
        }

    # =========================================================================
    # LEADERBOARD
    # =========================================================================

    async def fetch_leaderboard_page(
        self,
        competition_id: str,
        page_token: str = "",
    ) -> LeaderboardPage:
        """
        Fetch one leaderboard page.

        A response with status=false yields a page with ok=False and no entries.

        Raises:
            FetchFailure: network error or non-success status
            DecodeFailure: malformed body
        """
        payload = await self.get_json(
            f"/api/upshot-api-proxy/allora/forge/competition/{competition_id}/leaderboard",
            params={"continuation_token": page_token},
        )
        if not isinstance(payload, dict):
            raise DecodeFailure(f"competition {competition_id}: leaderboard payload is not an object")

        if not payload.get("status"):
            return LeaderboardPage(ok=False)

        data = payload.get("data") or {}
        try:
            entries = [LeaderboardEntry(**row) for row in data.get("leaderboard") or []]
        except (TypeError, ValidationError) as e:
            raise DecodeFailure(f"competition {competition_id}: malformed leaderboard row: {e}") from e

        return LeaderboardPage(
            entries=entries,
            next_token=data.get("continuation_token") or "",
        )

    async def fetch_leaderboard(
        self,
        competition_id: str,
        max_pages: Optional[int] = None,
    ) -> dict[str, LeaderboardEntry]:
        """
        Fetch every leaderboard page, keyed by cosmos address.

        Follows continuation tokens until one is empty. A failure on the first
        page propagates; a failure, status=false or empty page later on stops
        paging and keeps what was collected.
        """
        if max_pages is None:
            max_pages = self._settings.leaderboard_max_pages

        log = logger.bind(competition_id=competition_id)
        entries: dict[str, LeaderboardEntry] = {}

        page = await self.fetch_leaderboard_page(competition_id)
        pages = 1
        if not page.ok:
            log.warning("Leaderboard unavailable")
            return entries
        _collect(entries, page.entries)

        token = page.next_token
        while token:
            if max_pages > 0 and pages >= max_pages:
                log.info("Reached max pages limit", max_pages=max_pages)
                break
            try:
                page = await self.fetch_leaderboard_page(competition_id, token)
            except FetchFailure as e:
                log.warning("Leaderboard page failed, keeping partial result", page=pages + 1, error=str(e))
                break
            pages += 1
            if not page.ok or not page.entries:
                break
            _collect(entries, page.entries)
            token = page.next_token

        log.debug("Fetched leaderboard", pages=pages, entries=len(entries))
        return entries

    # =========================================================================
    # COMPETITIONS
    # =========================================================================

    async def fetch_build_id(self) -> str:
        """Scrape the Next.js build id from the competitions page."""
        html = await self.get_text("/competitions")
        match = BUILD_ID_PATTERN.search(html)
        if not match:
            raise DecodeFailure("buildId not found in competitions page")
        return match.group(1)

    async def fetch_competitions(self) -> CompetitionListing:
        """
        Fetch the competition listing.

        Raises:
            FetchFailure: network error or non-success status
            DecodeFailure: build id or listing missing from the response
        """
        build_id = await self.fetch_build_id()
        payload = await self.get_json(f"/_next/data/{build_id}/competitions.json")
        listing = self.normalize_competitions(payload)

        logger.info(
            "Fetched competitions",
            build_id=build_id,
            active_and_upcoming=len(listing.active_and_upcoming),
            past=len(listing.past),
        )
        return listing

    @staticmethod
    def normalize_competitions(payload: Any) -> CompetitionListing:
        """Extract the competition lists from a Next.js page data document."""
        try:
            page = payload["pageProps"]["competitionsPage"]
        except (KeyError, TypeError) as e:
            raise DecodeFailure("competitionsPage missing from page data") from e

        try:
            return CompetitionListing(
                active_and_upcoming=[
                    Competition(**c) for c in page.get("activeAndUpcomingCompetitions") or []
                ],
                past=[Competition(**c) for c in page.get("pastCompetitions") or []],
            )
        except (AttributeError, TypeError, ValidationError) as e:
            raise DecodeFailure(f"malformed competition listing: {e}") from e


def _collect(entries: dict[str, LeaderboardEntry], rows: list[LeaderboardEntry]) -> None:
    for row in rows:
        if row.cosmos_address:
            entries[row.cosmos_address] = row
