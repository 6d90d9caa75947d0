"""Best-effort illustration for new todos, fetched from the Pexels API."""

import logging
from pathlib import Path
from typing import Optional

import httpx
from django.conf import settings

from .exceptions import ImageFetchError

log = logging.getLogger(__name__)

PEXELS_SEARCH_URL = "https://api.pexels.com/v1/search"


def image_path(task_id: int) -> Path:
    return Path(settings.TODO_IMAGE_DIR) / f"{task_id}.jpg"


def image_url(task_id: int) -> Optional[str]:
    """Public URL of a todo's image.

    None if it was never saved, or if `TODO_IMAGE_DIR` lies outside
    `MEDIA_ROOT` and so is not served under `MEDIA_URL`.
    """
    if not image_path(task_id).exists():
        return None
    try:
        rel = Path(settings.TODO_IMAGE_DIR).resolve().relative_to(Path(settings.MEDIA_ROOT).resolve())
    except ValueError:
        return None
    prefix = "".join(f"{part}/" for part in rel.parts)
    return f"{settings.MEDIA_URL}{prefix}{task_id}.jpg"


def fetch_and_save_image(query: str, task_id: int,
                         client: Optional[httpx.Client] = None) -> Path:
    """Search Pexels for `query` and store the first hit as `<task_id>.jpg`.

    Raises:
        ImageFetchError: no API key configured, an HTTP failure, no results,
            a malformed response, or the file could not be written.
    """
    api_key = settings.PEXELS_API_KEY
    if not api_key:
        raise ImageFetchError("PEXELS_API_KEY not found in environment variables")

    owns_client = client is None
    if client is None:
        client = httpx.Client(timeout=settings.TODO_IMAGE_TIMEOUT)
    try:
        search = client.get(
            PEXELS_SEARCH_URL,
            params={"query": query, "per_page": 1},
            headers={"Authorization": api_key},
        )
        if search.status_code != 200:
            raise ImageFetchError(f"Pexels API error: {search.status_code}")

        photos = search.json().get("photos") or []
        if not photos:
            raise ImageFetchError("No images found for query")
        url = photos[0]["src"]["medium"]

        download = client.get(url)
        if download.status_code != 200:
            raise ImageFetchError(f"Failed to download image: {download.status_code}")

        path = image_path(task_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(download.content)
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        raise ImageFetchError(str(exc)) from exc
    except (ValueError, KeyError, IndexError, TypeError, AttributeError) as exc:
        # JSONDecodeError is a ValueError
        raise ImageFetchError(f"Unexpected Pexels payload: {exc!r}") from exc
    except OSError as exc:
        raise ImageFetchError(f"Could not save image: {exc}") from exc
    finally:
        if owns_client:
            client.close()

    log.info("image saved for todo %s: %s", task_id, path)
    return path
