from __future__ import annotations

import logging

from backend.feedsync.actors.actor import Actor, HandlerTable
from backend.feedsync.models.contracts import ListVideosRequest
from backend.feedsync.models.entities import Video
from backend.feedsync.repositories.common import utc_now_iso
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager

LOGGER = logging.getLogger("feedsync.actors.feed")

LIST_REQUESTED = "videos.list-requested"
MARK_WATCHED_REQUESTED = "videos.mark-watched-requested"


class Feed(Actor):
    def __init__(self, *, database: Database) -> None:
        super().__init__()
        self._database = database

    def handlers(self) -> HandlerTable:
        return (
            (LIST_REQUESTED, self.on_list_requested),
            (MARK_WATCHED_REQUESTED, self.on_mark_watched_requested),
        )

    async def on_list_requested(self, _topic: str, data: ListVideosRequest | None) -> list[Video]:
        request = data if data is not None else ListVideosRequest()
        filters: dict[str, object] = {"is_enabled": 1}
        if not request.include_watched:
            filters["watched"] = 0
        return await EntityManager(self._database).query(
            Video, filters, order_by="-published_at", limit=request.limit
        )

    async def on_mark_watched_requested(self, _topic: str, video_id: str) -> bool:
        em = EntityManager(self._database)

        async def _mark() -> bool:
            video = await em.find(Video, video_id)
            if video is None:
                return False
            if not video.watched:
                video.watched = 1
                video.last_update = utc_now_iso()
                await em.persist(video)
            return True

        marked = await em.run_transaction(_mark)
        LOGGER.debug("video watched video_id=%s found=%s", video_id, marked)
        return marked
