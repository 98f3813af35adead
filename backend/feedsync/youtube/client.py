from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from importlib import import_module
from pathlib import Path
from typing import Any, cast
from urllib.parse import unquote

from backend.feedsync.models.entities import (
    Account,
    AccountState,
    Channel,
    Playlist,
    Subscription,
    SubscriptionState,
    SubscriptionType,
    Video,
)
from backend.feedsync.repositories.common import utc_now_iso

LOGGER = logging.getLogger("feedsync.youtube")

YOUTUBE_SCOPES = [
    "https://www.googleapis.com/auth/youtube.readonly",
    "https://www.googleapis.com/auth/youtube",
]
MAX_PAGE_SIZE = 50
ISO8601_DURATION_PATTERN = re.compile(
    r"^P(?:(?P<days>\d+)D)?(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
SUBSCRIPTION_URL_PATTERN = re.compile(
    r"^https://www\.youtube\.com/(channel/|user/|playlist\?(.+&)?list=|watch\?(.+&)?list=).+$"
)
USER_URL_PATTERN = re.compile(r"^https://www\.youtube\.com/user/([^/]+)$")
CHANNEL_URL_PATTERN = re.compile(r"^https://www\.youtube\.com/channel/([^/]+)$")
PLAYLIST_URL_PATTERN = re.compile(
    r"^https://www\.youtube\.com/(?:playlist|watch)\?(?:.+&)?list=([^&]+)(?:&.+)?$"
)
_RATE_LIMIT_MARKERS: tuple[str, ...] = (
    "quotaexceeded",
    "dailylimitexceeded",
    "ratelimitexceeded",
    "userratelimitexceeded",
)


class YouTubeApiError(Exception):
    pass


class YouTubeAuthorizationError(YouTubeApiError):
    pass


class InvalidSubscriptionUrlError(ValueError):
    pass


@dataclass(frozen=True)
class ResolvedSubscription:
    type: SubscriptionType
    resource_id: str
    channel_id: str | None
    playlist_id: str | None


class YouTubeClient:
    """
    Asynchronous facade over the YouTube Data API v3.

    Unauthorized requests use the API key; authorized requests use the OAuth
    token stored for `account_id`. Blocking `googleapiclient` calls run in
    worker threads and are bounded by `request_timeout_seconds`; the interactive
    OAuth consent flow gets `authorization_timeout_seconds` instead.
    """

    def __init__(
        self,
        *,
        account_id: str | None,
        api_key: str | None,
        token_dir: Path,
        client_secret_path: Path,
        request_timeout_seconds: float = 20.0,
        authorization_timeout_seconds: float = 300.0,
    ) -> None:
        self.account_id = account_id
        self._api_key = api_key
        self._token_dir = token_dir
        self._client_secret_path = client_secret_path
        self._request_timeout_seconds = request_timeout_seconds
        self._authorization_timeout_seconds = authorization_timeout_seconds
        self._services: dict[bool, Any] = {}

    async def authorize(self) -> None:
        """Obtain (interactively if needed) and store OAuth credentials for the account."""
        try:
            await self._run(
                lambda: self._service(authorized=True, interactive=True),
                timeout=self._authorization_timeout_seconds,
            )
        except YouTubeAuthorizationError:
            raise
        except YouTubeApiError as exc:
            raise YouTubeAuthorizationError(f"YouTube authorization failed: {exc}") from exc

    async def get_account_info(self, account_id: str, channel_id: str | None = None) -> Account:
        if channel_id is None:
            request: Callable[[Any], Any] = lambda youtube: youtube.channels().list(
                part="snippet,contentDetails", mine=True, maxResults=1
            )
        else:
            request = lambda youtube: youtube.channels().list(
                part="snippet,contentDetails", id=channel_id, maxResults=1
            )
        response = await self._execute(request, authorized=True)
        items = _as_list(response.get("items"))
        if not items:
            raise YouTubeApiError(f"no channel found for account {account_id}")
        item = _as_dict(items[0])
        snippet = _as_dict(item.get("snippet"))
        related = _as_dict(_as_dict(item.get("contentDetails")).get("relatedPlaylists"))
        return Account(
            id=account_id,
            channel_id=_coerce_nonempty_string(item.get("id")),
            title=_coerce_nonempty_string(snippet.get("title")),
            state=AccountState.ACTIVE,
            last_error=None,
            watch_history_playlist_id=_coerce_nonempty_string(related.get("watchHistory")),
            watch_later_playlist_id=_coerce_nonempty_string(related.get("watchLater")),
        )

    async def get_subscriptions(
        self, account: Account, authorized: bool = False
    ) -> list[tuple[Subscription, Channel]]:
        if account.channel_id is None and not authorized:
            raise YouTubeApiError(f"account {account.id} has no known channel id")

        channels: list[Channel] = []
        page_token: str | None = None
        while True:
            current_token = page_token

            def _request(youtube: Any) -> Any:
                if authorized:
                    return youtube.subscriptions().list(
                        part="snippet",
                        mine=True,
                        maxResults=MAX_PAGE_SIZE,
                        pageToken=current_token,
                    )
                return youtube.subscriptions().list(
                    part="snippet",
                    channelId=account.channel_id,
                    maxResults=MAX_PAGE_SIZE,
                    pageToken=current_token,
                )

            response = await self._execute(_request, authorized=authorized)
            for raw_item in _as_list(response.get("items")):
                snippet = _as_dict(_as_dict(raw_item).get("snippet"))
                channel_id = _coerce_nonempty_string(
                    _as_dict(snippet.get("resourceId")).get("channelId")
                )
                if channel_id is None:
                    continue
                channels.append(
                    Channel(
                        id=channel_id,
                        title=str(snippet.get("title") or ""),
                        thumbnails=_extract_thumbnail_urls(snippet),
                        account_ids=[account.id],
                    )
                )
            page_token = _coerce_nonempty_string(response.get("nextPageToken"))
            if page_token is None:
                break

        uploads = await self._get_uploads_playlist_ids([channel.id for channel in channels])
        pairs: list[tuple[Subscription, Channel]] = []
        for channel in channels:
            channel.uploads_playlist_id = uploads.get(channel.id)
            pairs.append(
                (
                    Subscription(
                        type=SubscriptionType.CHANNEL,
                        playlist_id=channel.uploads_playlist_id,
                        channel_id=channel.id,
                        state=SubscriptionState.ACTIVE,
                        account_id=account.id,
                        is_incognito=0,
                    ),
                    channel,
                )
            )
        return pairs

    async def get_channel(self, channel_id: str) -> Channel:
        response = await self._execute(
            lambda youtube: youtube.channels().list(
                part="snippet,contentDetails", id=channel_id, maxResults=1
            )
        )
        items = _as_list(response.get("items"))
        if not items:
            raise YouTubeApiError(f"channel {channel_id} does not exist")
        item = _as_dict(items[0])
        snippet = _as_dict(item.get("snippet"))
        related = _as_dict(_as_dict(item.get("contentDetails")).get("relatedPlaylists"))
        return Channel(
            id=channel_id,
            title=str(snippet.get("title") or ""),
            thumbnails=_extract_thumbnail_urls(snippet),
            uploads_playlist_id=_coerce_nonempty_string(related.get("uploads")),
            last_update=utc_now_iso(),
        )

    async def get_playlist(self, playlist_id: str) -> Playlist:
        playlists = await self._get_playlists([playlist_id])
        if not playlists:
            raise YouTubeApiError(f"playlist {playlist_id} does not exist")
        return playlists[0]

    async def get_uploads_playlists(self, channels: Sequence[Channel]) -> list[Playlist]:
        owners = {
            channel.uploads_playlist_id: channel.id
            for channel in channels
            if channel.uploads_playlist_id is not None
        }
        playlists = await self._get_playlists(list(owners))
        for playlist in playlists:
            playlist.channel_id = owners.get(playlist.id, playlist.channel_id)
        return playlists

    async def get_playlists_with_new_content(
        self, playlists: Sequence[Playlist]
    ) -> list[Playlist]:
        """Playlists whose remote video count differs, with the new count applied."""
        by_id = {playlist.id: playlist for playlist in playlists}
        updated: list[Playlist] = []
        for batch in _batched(list(by_id), MAX_PAGE_SIZE):
            response = await self._execute(
                lambda youtube, batch=batch: youtube.playlists().list(
                    part="contentDetails", id=",".join(batch), maxResults=MAX_PAGE_SIZE
                )
            )
            for raw_item in _as_list(response.get("items")):
                item = _as_dict(raw_item)
                playlist = by_id.get(str(item.get("id")))
                if playlist is None:
                    continue
                video_count = _coerce_int(_as_dict(item.get("contentDetails")).get("itemCount"))
                if video_count is not None and video_count != playlist.video_count:
                    updated.append(
                        playlist.model_copy(
                            update={"video_count": video_count, "last_update": utc_now_iso()}
                        )
                    )
        return updated

    async def get_new_playlist_videos(
        self,
        playlist: Playlist,
        known_videos: Sequence[Video],
        authorized: bool = False,
    ) -> list[Video]:
        if len(known_videos) == playlist.video_count:
            return []

        known_ids = {video.id for video in known_videos}
        missing = playlist.video_count - len(known_videos)
        new_videos: dict[str, Video] = {}
        page_token: str | None = None
        while missing > 0:
            current_token = page_token
            response = await self._execute(
                lambda youtube: youtube.playlistItems().list(
                    part="snippet,contentDetails",
                    playlistId=playlist.id,
                    maxResults=MAX_PAGE_SIZE,
                    pageToken=current_token,
                ),
                authorized=authorized,
            )
            for raw_item in _as_list(response.get("items")):
                video = _video_from_playlist_item(_as_dict(raw_item), playlist)
                if video is None:
                    continue
                if video.id in known_ids:
                    missing -= 1
                elif video.id not in new_videos:
                    new_videos[video.id] = video
                if missing <= 0:
                    break
            page_token = _coerce_nonempty_string(response.get("nextPageToken"))
            if page_token is None:
                break

        for metadata in await self._get_videos_metadata(list(new_videos)):
            video = new_videos.get(str(metadata.get("id")))
            if video is None:
                continue
            video.duration = _parse_iso8601_duration_seconds(
                _as_dict(metadata.get("contentDetails")).get("duration")
            ) or -1
            view_count = _coerce_int(_as_dict(metadata.get("statistics")).get("viewCount"))
            video.view_count = view_count if view_count is not None else -1
        return list(new_videos.values())

    async def update_video_view_counts(self, videos: Sequence[Video]) -> list[Video]:
        by_id = {video.id: video for video in videos}
        updated: list[Video] = []
        for metadata in await self._get_videos_metadata(list(by_id)):
            video = by_id.get(str(metadata.get("id")))
            view_count = _coerce_int(_as_dict(metadata.get("statistics")).get("viewCount"))
            if video is None or view_count is None or view_count == video.view_count:
                continue
            video.view_count = view_count
            video.last_update = utc_now_iso()
            updated.append(video)
        return updated

    async def add_video_to_playlist(self, video: Video, playlist: Playlist) -> None:
        body = {
            "snippet": {
                "playlistId": playlist.id,
                "resourceId": {"kind": "youtube#video", "videoId": video.id},
            }
        }
        await self._execute(
            lambda youtube: youtube.playlistItems().insert(part="snippet", body=body),
            authorized=True,
        )

    async def resolve_incognito_subscription(self, url: str) -> ResolvedSubscription:
        if not SUBSCRIPTION_URL_PATTERN.match(url):
            raise InvalidSubscriptionUrlError("Invalid user, channel or playlist URL")

        channel_id: str | None = None
        user_match = USER_URL_PATTERN.match(url)
        channel_match = CHANNEL_URL_PATTERN.match(url)
        if user_match is not None:
            channel_id = await self._get_user_channel_id(unquote(user_match.group(1)))
        elif channel_match is not None:
            channel_id = unquote(channel_match.group(1))

        if channel_id is not None:
            channel = await self.get_channel(channel_id)
            return ResolvedSubscription(
                type=SubscriptionType.CHANNEL,
                resource_id=channel_id,
                channel_id=channel_id,
                playlist_id=channel.uploads_playlist_id,
            )

        playlist_match = PLAYLIST_URL_PATTERN.match(url)
        if playlist_match is None:
            raise InvalidSubscriptionUrlError("Invalid user, channel or playlist URL")
        playlist = await self.get_playlist(unquote(playlist_match.group(1)))
        return ResolvedSubscription(
            type=SubscriptionType.PLAYLIST,
            resource_id=playlist.id,
            channel_id=playlist.channel_id,
            playlist_id=playlist.id,
        )

    async def _get_user_channel_id(self, username: str) -> str:
        response = await self._execute(
            lambda youtube: youtube.channels().list(part="id", forUsername=username, maxResults=1)
        )
        items = _as_list(response.get("items"))
        channel_id = _coerce_nonempty_string(_as_dict(items[0]).get("id")) if items else None
        if channel_id is None:
            raise YouTubeApiError(f"user {username} has no channel")
        return channel_id

    async def _get_uploads_playlist_ids(self, channel_ids: Sequence[str]) -> dict[str, str]:
        uploads: dict[str, str] = {}
        for batch in _batched(channel_ids, MAX_PAGE_SIZE):
            response = await self._execute(
                lambda youtube, batch=batch: youtube.channels().list(
                    part="contentDetails", id=",".join(batch), maxResults=MAX_PAGE_SIZE
                )
            )
            for raw_item in _as_list(response.get("items")):
                item = _as_dict(raw_item)
                related = _as_dict(_as_dict(item.get("contentDetails")).get("relatedPlaylists"))
                uploads_id = _coerce_nonempty_string(related.get("uploads"))
                if uploads_id is not None:
                    uploads[str(item.get("id"))] = uploads_id
        return uploads

    async def _get_playlists(self, playlist_ids: Sequence[str]) -> list[Playlist]:
        playlists: list[Playlist] = []
        for batch in _batched(playlist_ids, MAX_PAGE_SIZE):
            response = await self._execute(
                lambda youtube, batch=batch: youtube.playlists().list(
                    part="snippet,contentDetails", id=",".join(batch), maxResults=MAX_PAGE_SIZE
                )
            )
            for raw_item in _as_list(response.get("items")):
                item = _as_dict(raw_item)
                snippet = _as_dict(item.get("snippet"))
                playlists.append(
                    Playlist(
                        id=str(item.get("id")),
                        channel_id=_coerce_nonempty_string(snippet.get("channelId")),
                        title=str(snippet.get("title") or ""),
                        description=str(snippet.get("description") or ""),
                        video_count=_coerce_int(
                            _as_dict(item.get("contentDetails")).get("itemCount")
                        )
                        or 0,
                        thumbnails=_extract_thumbnail_urls(snippet),
                        last_update=utc_now_iso(),
                    )
                )
        return playlists

    async def _get_videos_metadata(self, video_ids: Sequence[str]) -> list[dict[str, Any]]:
        metadata: list[dict[str, Any]] = []
        for batch in _batched(video_ids, MAX_PAGE_SIZE):
            response = await self._execute(
                lambda youtube, batch=batch: youtube.videos().list(
                    part="contentDetails,statistics", id=",".join(batch), maxResults=MAX_PAGE_SIZE
                )
            )
            metadata.extend(_as_dict(item) for item in _as_list(response.get("items")))
        return metadata

    async def _execute(
        self,
        build_request: Callable[[Any], Any],
        *,
        authorized: bool = False,
    ) -> dict[str, Any]:
        def _call() -> dict[str, Any]:
            request = build_request(self._service(authorized=authorized))
            return _as_dict(request.execute())

        return await self._run(_call)

    async def _run(self, call: Callable[[], Any], timeout: float | None = None) -> Any:
        deadline = self._request_timeout_seconds if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.to_thread(call), timeout=deadline)
        except YouTubeApiError:
            raise
        except TimeoutError as exc:
            raise YouTubeApiError(f"YouTube request timed out after {deadline:g}s") from exc
        except Exception as exc:
            raise _translate_error(exc) from exc

    def _service(self, *, authorized: bool, interactive: bool = False) -> Any:
        cached = self._services.get(authorized)
        if cached is not None:
            return cached
        if authorized:
            service = _build_authorized_service(
                self._token_path(),
                self._client_secret_path,
                interactive=interactive,
            )
        else:
            if self._api_key is None:
                raise YouTubeApiError("unauthorized requests require FEEDSYNC_YOUTUBE_API_KEY")
            service = _build_api_key_service(self._api_key)
        self._services[authorized] = service
        return service

    def _token_path(self) -> Path:
        if self.account_id is None:
            raise YouTubeAuthorizationError("authorized requests require an account")
        return self._token_dir / f"{self.account_id}.json"


def _load_discovery() -> Any:
    try:
        return import_module("googleapiclient.discovery")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeApiError("YouTube access requires google-api-python-client") from exc


def _build_api_key_service(api_key: str) -> Any:
    build_fn: Any = _load_discovery().build
    return build_fn("youtube", "v3", developerKey=api_key, cache_discovery=False)


def _build_authorized_service(
    token_path: Path,
    secrets_path: Path,
    *,
    interactive: bool,
) -> Any:
    try:
        requests_module = import_module("google.auth.transport.requests")
        credentials_module = import_module("google.oauth2.credentials")
        flow_module = import_module("google_auth_oauthlib.flow")
    except ImportError as exc:  # pragma: no cover - dependency controlled at runtime
        raise YouTubeApiError(
            "Authorized YouTube access requires google-auth and google-auth-oauthlib"
        ) from exc

    request_cls: Any = requests_module.Request
    credentials_cls: Any = credentials_module.Credentials
    flow_cls: Any = flow_module.InstalledAppFlow

    credentials: Any | None = None
    if token_path.exists():
        credentials = credentials_cls.from_authorized_user_file(str(token_path), YOUTUBE_SCOPES)

    if credentials is None or not credentials.valid:
        if credentials is not None and credentials.expired and credentials.refresh_token:
            try:
                credentials.refresh(request_cls())
            except Exception as exc:
                LOGGER.warning(
                    "youtube oauth token_refresh_failed token_path=%s",
                    token_path,
                    exc_info=True,
                )
                raise YouTubeAuthorizationError(
                    f"Failed to refresh YouTube OAuth token: {exc}"
                ) from exc
        elif interactive:
            if not secrets_path.exists():
                raise YouTubeAuthorizationError(
                    f"Missing OAuth client secret file at {secrets_path}"
                )
            flow = flow_cls.from_client_secrets_file(str(secrets_path), YOUTUBE_SCOPES)
            credentials = flow.run_local_server(port=0)
        else:
            raise YouTubeAuthorizationError(f"No stored YouTube authorization at {token_path}")

        if credentials is None:
            raise YouTubeAuthorizationError("OAuth flow did not return credentials")

        token_path.parent.mkdir(parents=True, exist_ok=True)
        token_path.write_text(str(credentials.to_json()), encoding="utf-8")

    build_fn: Any = _load_discovery().build
    return build_fn("youtube", "v3", credentials=credentials, cache_discovery=False)


def _translate_error(exc: Exception) -> YouTubeApiError:
    message = _summarize_exception_message(exc)
    response = getattr(exc, "resp", None)
    status = _coerce_int(getattr(response, "status", None))
    normalized = message.lower()
    rate_limited = any(marker in normalized for marker in _RATE_LIMIT_MARKERS)

    if status == 401 or (status == 403 and not rate_limited):
        return YouTubeAuthorizationError(message)
    if "refresherror" in exc.__class__.__name__.lower() or _oauth_refresh_requires_reauth(exc):
        return YouTubeAuthorizationError(message)
    return YouTubeApiError(message)


def _oauth_refresh_requires_reauth(exc: Exception) -> bool:
    normalized = str(exc).lower()
    return "invalid_grant" in normalized or "expired or revoked" in normalized


def _video_from_playlist_item(item: dict[str, Any], playlist: Playlist) -> Video | None:
    snippet = _as_dict(item.get("snippet"))
    content_details = _as_dict(item.get("contentDetails"))
    video_id = _coerce_nonempty_string(
        content_details.get("videoId") or _as_dict(snippet.get("resourceId")).get("videoId")
    )
    if video_id is None:
        return None
    published_at = _coerce_nonempty_string(
        content_details.get("videoPublishedAt") or snippet.get("publishedAt")
    )
    return Video(
        id=video_id,
        title=str(snippet.get("title") or ""),
        description=str(snippet.get("description") or ""),
        published_at=published_at or "",
        thumbnails=_extract_thumbnail_urls(snippet),
        duration=-1,
        view_count=-1,
        channel_id=_coerce_nonempty_string(snippet.get("videoOwnerChannelId"))
        or playlist.channel_id,
        account_ids=list(playlist.account_ids),
        incognito_subscription_ids=list(playlist.incognito_subscription_ids),
        watched=0,
        last_update=utc_now_iso(),
    )


def _batched(values: Sequence[str], size: int) -> Iterable[list[str]]:
    for start in range(0, len(values), size):
        yield list(values[start : start + size])


def _parse_iso8601_duration_seconds(raw_value: object) -> int | None:
    if not isinstance(raw_value, str):
        return None
    matched = ISO8601_DURATION_PATTERN.match(raw_value.strip())
    if matched is None:
        return None

    days = int(matched.group("days") or 0)
    hours = int(matched.group("hours") or 0)
    minutes = int(matched.group("minutes") or 0)
    seconds = int(matched.group("seconds") or 0)
    return days * 86_400 + hours * 3_600 + minutes * 60 + seconds


def _extract_thumbnail_urls(snippet: dict[str, Any]) -> dict[str, str]:
    thumbnails = _as_dict(snippet.get("thumbnails"))
    urls: dict[str, str] = {}
    for quality, payload in thumbnails.items():
        url_value = _as_dict(payload).get("url")
        if isinstance(url_value, str) and url_value.strip():
            urls[quality] = url_value
    return urls


def _summarize_exception_message(exc: Exception, *, max_length: int = 400) -> str:
    raw = str(exc).strip()
    if not raw:
        raw = repr(exc)
    if len(raw) <= max_length:
        return raw
    return f"{raw[: max_length - 3]}..."


def _coerce_nonempty_string(raw_value: object) -> str | None:
    if isinstance(raw_value, str) and raw_value.strip():
        return raw_value
    return None


def _coerce_int(raw_value: object) -> int | None:
    if isinstance(raw_value, bool):
        return int(raw_value)
    if isinstance(raw_value, int):
        return raw_value
    if isinstance(raw_value, float):
        return int(raw_value)
    if isinstance(raw_value, str):
        try:
            return int(raw_value)
        except ValueError:
            return None
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        raw_dict = cast(dict[object, object], value)
        converted: dict[str, Any] = {}
        for key, item in raw_dict.items():
            if isinstance(key, str):
                converted[key] = item
        return converted
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        raw_list = cast(list[Any], value)
        return list(raw_list)
    return []
