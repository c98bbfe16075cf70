import logging
import socket
from ipaddress import ip_address
from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit

import requests

logger = logging.getLogger(__name__)


class DownloadError(RuntimeError):
    pass


def is_http_url(value: str) -> bool:
    return urlsplit(value).scheme in ("http", "https")


def _is_private_ip(ip_value: str) -> bool:
    try:
        ip = ip_address(ip_value)
    except ValueError:
        return True
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
    )


def ensure_public_url(url: str) -> None:
    parsed = urlsplit(url)
    if parsed.scheme not in ("http", "https"):
        raise DownloadError("URL must be an http(s) URL.")
    host = parsed.hostname
    if not host:
        raise DownloadError("Invalid URL host for video download.")
    try:
        infos = socket.getaddrinfo(host, parsed.port or 443)
    except socket.gaierror as exc:
        raise DownloadError("Unable to resolve URL host for video download.") from exc
    for _, _, _, _, sockaddr in infos:
        if _is_private_ip(sockaddr[0]):
            raise DownloadError("URL host is not allowed for video download.")


def download_video(
    url: str,
    dst_path: Path,
    max_bytes: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> Optional[str]:
    """Stream a remote video to ``dst_path``. Returns the response content type."""
    ensure_public_url(url)
    dst_path.parent.mkdir(parents=True, exist_ok=True)

    log_every_bytes = 100 * 1024 * 1024
    next_log_bytes = log_every_bytes
    bytes_downloaded = 0

    http = session or requests
    try:
        with http.get(
            url,
            stream=True,
            timeout=(10, 1800),
            headers={"User-Agent": "ClipAIWorker/1.0"},
        ) as r:
            r.raise_for_status()
            content_type = (r.headers.get("Content-Type") or "").split(";")[0].strip() or None
            with open(dst_path, "wb") as f:
                for chunk in r.iter_content(chunk_size=1024 * 1024):
                    if not chunk:
                        continue
                    bytes_downloaded += len(chunk)
                    if max_bytes is not None and bytes_downloaded > max_bytes:
                        raise DownloadError("Remote video exceeds the maximum allowed size.")
                    f.write(chunk)
                    if bytes_downloaded >= next_log_bytes:
                        logger.info(
                            "Downloaded %.1f MB from %s", bytes_downloaded / (1024 * 1024), url
                        )
                        next_log_bytes += log_every_bytes
    except requests.RequestException as exc:
        dst_path.unlink(missing_ok=True)
        raise DownloadError(f"Video download failed: {exc}") from exc
    except DownloadError:
        dst_path.unlink(missing_ok=True)
        raise

    logger.info("VIDEO_DOWNLOADED url=%s bytes=%s", url, bytes_downloaded)
    return content_type
