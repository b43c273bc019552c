"""OpenSubtitles search and download proxy.

With an API key configured the OpenSubtitles.com REST API (v1) is used;
without one the keyless legacy rest.opensubtitles.org search is used.
Both are normalized to the same result shape the player dialog reads.

API docs: https://opensubtitles.stoplight.io/docs/opensubtitles-api/
"""

import logging
import os
from typing import Optional
from urllib.parse import quote

from config import get_settings
from error_handler import ConfigurationError, NotFoundError, RemoteConnectionError
from http_session import create_session, url_host

logger = logging.getLogger(__name__)

API_BASE = "https://api.opensubtitles.com/api/v1"
LEGACY_BASE = "https://rest.opensubtitles.org"
LEGACY_DOWNLOAD = "https://dl.opensubtitles.org/en/download/sub"

# Player language codes (ISO 639-2/B) to the codes the v1 API expects
_V1_LANGUAGES = {
    "eng": "en",
    "spa": "es",
    "fre": "fr",
    "fra": "fr",
    "ger": "de",
    "deu": "de",
    "ita": "it",
    "por": "pt-pt",
    "rus": "ru",
    "jpn": "ja",
    "kor": "ko",
    "chi": "zh-cn",
    "zho": "zh-cn",
    "ara": "ar",
    "hin": "hi",
    "dut": "nl",
    "nld": "nl",
    "pol": "pl",
    "tur": "tr",
}


class SubtitleSearchClient:
    """Searches OpenSubtitles and fetches raw subtitle payloads."""

    def __init__(self, api_key: Optional[str] = None, user_agent: Optional[str] = None, session=None):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.opensubtitles_api_key
        self.user_agent = user_agent or settings.opensubtitles_user_agent
        self.session = session or create_session(
            max_retries=2,
            backoff_factor=1.0,
            timeout=settings.request_timeout,
            user_agent=self.user_agent,
            auth_hint={url_host(API_BASE): "Check SCOOTY_OPENSUBTITLES_API_KEY."},
        )

    @property
    def uses_api(self) -> bool:
        return bool(self.api_key)

    def _api_headers(self) -> dict:
        return {"Api-Key": self.api_key, "User-Agent": self.user_agent, "Accept": "application/json"}

    # ─── Search ──────────────────────────────────────────────────────────────

    def search(
        self,
        query: Optional[str] = None,
        imdb_id: Optional[str] = None,
        tmdb_id: Optional[str] = None,
        languages: Optional[str] = None,
        season: Optional[int] = None,
        episode: Optional[int] = None,
    ) -> dict:
        """Search by IMDb id, TMDb id or free text. Returns {results, total}.

        Raises:
            ValueError: If no search criterion was given.
            RemoteConnectionError: If the index cannot be reached.
        """
        if not (query or imdb_id or tmdb_id):
            raise ValueError("query, imdb_id or tmdb_id is required")

        if self.uses_api:
            results = self._search_api(query, imdb_id, tmdb_id, languages, season, episode)
        else:
            if tmdb_id and not (query or imdb_id):
                raise ConfigurationError(
                    "Searching by TMDb id needs an OpenSubtitles API key",
                    troubleshooting="Set SCOOTY_OPENSUBTITLES_API_KEY or search by title.",
                )
            results = self._search_legacy(query, imdb_id, languages, season, episode)

        logger.info("Subtitle search (%s) found %d results", "api" if self.uses_api else "legacy", len(results))
        return {"results": results, "total": len(results)}

    def _search_api(self, query, imdb_id, tmdb_id, languages, season, episode) -> list[dict]:
        params: dict = {}
        if imdb_id:
            params["imdb_id"] = _imdb_number(imdb_id)
        elif tmdb_id:
            params["tmdb_id"] = str(tmdb_id)
        else:
            params["query"] = query.strip()

        codes = _v1_languages(languages)
        if codes:
            params["languages"] = codes
        if season is not None:
            params["season_number"] = season
        if episode is not None:
            params["episode_number"] = episode

        logger.debug("OpenSubtitles API search params: %s", params)
        resp = self.session.get(f"{API_BASE}/subtitles", params=params, headers=self._api_headers())
        if resp.status_code != 200:
            logger.warning("OpenSubtitles search failed: HTTP %d, response: %s", resp.status_code, resp.text[:200])
            raise RemoteConnectionError(f"OpenSubtitles search failed: HTTP {resp.status_code}")

        return [_normalize_api_item(item) for item in resp.json().get("data", [])]

    def _search_legacy(self, query, imdb_id, languages, season, episode) -> list[dict]:
        # Path segments must be lowercase and in alphabetical order
        segments = []
        if episode is not None:
            segments.append(f"episode-{int(episode)}")
        if imdb_id:
            segments.append(f"imdbid-{_imdb_number(imdb_id)}")
        else:
            segments.append("query-" + quote(query.strip().lower(), safe=""))
        if season is not None:
            segments.append(f"season-{int(season)}")
        if languages and languages != "all":
            segments.append(f"sublanguageid-{languages.lower()}")

        url = f"{LEGACY_BASE}/search/" + "/".join(segments)
        logger.debug("OpenSubtitles legacy search: %s", url)
        resp = self.session.get(url, headers={"X-User-Agent": self.user_agent})
        if resp.status_code != 200:
            logger.warning("OpenSubtitles legacy search failed: HTTP %d", resp.status_code)
            raise RemoteConnectionError(f"OpenSubtitles search failed: HTTP {resp.status_code}")

        data = resp.json()
        if not isinstance(data, list):
            return []
        return [_normalize_legacy_item(item) for item in data]

    # ─── Download ────────────────────────────────────────────────────────────

    def download(
        self,
        zip_url: Optional[str] = None,
        subtitle_id: Optional[str] = None,
        download_url: Optional[str] = None,
        file_id: Optional[str] = None,
    ) -> bytes:
        """Fetch the raw subtitle payload (possibly zipped or gzipped).

        The first given reference wins, in the order zip_url, subtitle_id,
        download_url, file_id.
        """
        if zip_url:
            return self._fetch(zip_url)
        if subtitle_id:
            if self.uses_api:
                # API results expose the file id as their id
                return self._fetch(self._api_download_link(subtitle_id))
            return self._fetch(f"{LEGACY_DOWNLOAD}/{quote(str(subtitle_id), safe='')}")
        if download_url:
            return self._fetch(download_url)
        if file_id:
            return self._fetch(self._api_download_link(file_id))
        raise ValueError("zip_url, subtitle_id, download_url or file_id is required")

    def _api_download_link(self, file_id) -> str:
        if not self.uses_api:
            raise ConfigurationError(
                "Downloading by file_id needs an OpenSubtitles API key",
                troubleshooting="Set SCOOTY_OPENSUBTITLES_API_KEY.",
            )
        resp = self.session.post(
            f"{API_BASE}/download",
            json={"file_id": int(file_id)},
            headers=self._api_headers(),
        )
        if resp.status_code != 200:
            raise RemoteConnectionError(f"OpenSubtitles download request failed: HTTP {resp.status_code}")
        link = resp.json().get("link")
        if not link:
            raise RemoteConnectionError("No download link in OpenSubtitles response")
        return link

    def fetch_text_url(self, url: str) -> bytes:
        """Download an arbitrary caption URL."""
        return self._fetch(url)

    def _fetch(self, url: str) -> bytes:
        resp = self.session.get(url)
        if resp.status_code == 404:
            raise NotFoundError(f"Subtitle not found at {url}")
        if resp.status_code != 200:
            raise RemoteConnectionError(f"Subtitle download failed: HTTP {resp.status_code}")
        logger.info("Downloaded subtitle payload (%d bytes)", len(resp.content))
        return resp.content

    def close(self) -> None:
        self.session.close()


def _imdb_number(imdb_id) -> str:
    return str(imdb_id).lower().replace("tt", "").lstrip("0") or "0"


def _v1_languages(languages: Optional[str]) -> str:
    if not languages or languages == "all":
        return ""
    codes = []
    for code in languages.split(","):
        code = code.strip().lower()
        if code:
            codes.append(_V1_LANGUAGES.get(code, code))
    return ",".join(sorted(set(codes)))


def _normalize_api_item(item: dict) -> dict:
    attrs = item.get("attributes", {})
    files = attrs.get("files") or [{}]
    feature = attrs.get("feature_details") or {}
    uploader = attrs.get("uploader") or {}
    filename = files[0].get("file_name") or ""
    file_id = files[0].get("file_id")
    return {
        "id": str(file_id) if file_id is not None else item.get("id"),
        "file_id": file_id,
        "zip_url": None,
        "download_url": None,
        "language": attrs.get("language"),
        "language_name": None,
        "release": attrs.get("release") or "",
        "feature": feature.get("title") or feature.get("movie_name") or "",
        "download_count": attrs.get("download_count", 0),
        "hearing_impaired": bool(attrs.get("hearing_impaired")),
        "from_trusted": bool(attrs.get("from_trusted")),
        "uploader": uploader.get("name") or "",
        "format": os.path.splitext(filename)[1].lower().lstrip(".") or "srt",
    }


def _normalize_legacy_item(item: dict) -> dict:
    return {
        "id": item.get("IDSubtitle"),
        "file_id": item.get("IDSubtitleFile"),
        "zip_url": item.get("ZipDownloadLink"),
        "download_url": item.get("SubDownloadLink"),
        "language": item.get("ISO639") or item.get("SubLanguageID"),
        "language_name": item.get("LanguageName"),
        "release": item.get("MovieReleaseName") or "",
        "feature": item.get("MovieName") or "",
        "download_count": _to_int(item.get("SubDownloadsCnt")),
        "hearing_impaired": item.get("SubHearingImpaired") == "1",
        "from_trusted": item.get("SubFromTrusted") == "1",
        "uploader": item.get("UserNickName") or "",
        "format": (item.get("SubFormat") or "srt").lower(),
    }


def _to_int(value) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
