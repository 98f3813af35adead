from __future__ import annotations

import logging
from dataclasses import dataclass

from backend.feedsync.models.entities import Channel, Playlist, Video
from backend.feedsync.repositories.database import Database
from backend.feedsync.repositories.entity_manager import EntityManager
from backend.feedsync.services import video_storage
from backend.feedsync.telemetry import TelemetryClient
from backend.feedsync.youtube.client import YouTubeApiError
from backend.feedsync.youtube.client_factory import ClientFactory

LOGGER = logging.getLogger("feedsync.services.videos_fetcher")


@dataclass(frozen=True)
class VideosUpdate:
    playlists_checked: int
    playlists_changed: int
    videos_added: int
    failed_playlist_ids: tuple[str, ...] = ()


class VideosFetcher:
    """Pulls new uploads of every known playlist into the video store."""

    def __init__(
        self,
        *,
        database: Database,
        client_factory: ClientFactory,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._database = database
        self._client_factory = client_factory
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    async def update_videos(self) -> VideosUpdate:
        client = self._client_factory.get_anonymous_client()
        em = EntityManager(self._database)
        with self._telemetry.operation("videos.fetch") as results:
            playlists = await em.query(Playlist)
            changed = await client.get_playlists_with_new_content(playlists)

            fetched: list[tuple[Playlist, list[Video]]] = []
            failed: list[str] = []
            for playlist in changed:
                known = await _known_videos(em, playlist)
                try:
                    new_videos = await client.get_new_playlist_videos(playlist, known)
                except YouTubeApiError as exc:
                    LOGGER.warning(
                        "playlist videos unavailable playlist_id=%s error=%s", playlist.id, exc
                    )
                    failed.append(playlist.id)
                    continue
                fetched.append((playlist, new_videos))

            async def _store() -> int:
                membership = await video_storage.load_enabled_membership(em)
                added = 0
                for playlist, new_videos in fetched:
                    for video in new_videos:
                        stored = await em.find(Video, video.id)
                        if stored is not None:
                            video = _merge_membership(stored, video)
                        else:
                            added += 1
                        video.is_enabled = 1 if membership.enables(video) else 0
                        await em.persist(video)
                    await em.persist(playlist)
                return added

            added = await em.run_transaction(_store)
            results.update(
                playlists=len(playlists),
                changed=len(changed),
                added=added,
                failed=len(failed),
            )

        LOGGER.info(
            "videos updated playlists=%d changed=%d added=%d failed=%d",
            len(playlists),
            len(changed),
            added,
            len(failed),
        )
        return VideosUpdate(
            playlists_checked=len(playlists),
            playlists_changed=len(changed),
            videos_added=added,
            failed_playlist_ids=tuple(failed),
        )

    async def update_view_counts(self) -> int:
        client = self._client_factory.get_anonymous_client()
        em = EntityManager(self._database)
        videos = await em.query(Video)
        updated = await client.update_video_view_counts(videos)

        async def _store() -> None:
            # Only the counters change; membership may have moved since the read.
            for video in updated:
                stored = await em.find(Video, video.id)
                if stored is None:
                    continue
                stored.view_count = video.view_count
                stored.last_update = video.last_update
                await em.persist(stored)

        await em.run_transaction(_store)
        LOGGER.info("view counts refreshed videos=%d updated=%d", len(videos), len(updated))
        return len(updated)


async def _known_videos(em: EntityManager, playlist: Playlist) -> list[Video]:
    if playlist.channel_id is not None:
        channel = await em.find(Channel, playlist.channel_id)
        if channel is not None and channel.uploads_playlist_id == playlist.id:
            return await em.query(Video, {"channel_id": playlist.channel_id})

    # Other playlists only count the videos stored through their own subscriptions.
    known: dict[str, Video] = {}
    for subscription_id in playlist.incognito_subscription_ids:
        for video in await em.query(Video, {"incognito_subscription_ids": subscription_id}):
            known.setdefault(video.id, video)
    return list(known.values())


def _merge_membership(stored: Video, fetched: Video) -> Video:
    for account_id in fetched.account_ids:
        if account_id not in stored.account_ids:
            stored.account_ids.append(account_id)
    for subscription_id in fetched.incognito_subscription_ids:
        if subscription_id not in stored.incognito_subscription_ids:
            stored.incognito_subscription_ids.append(subscription_id)
    return stored
