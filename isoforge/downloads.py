#!/usr/bin/env python3
"""
HTTP downloads with progress reporting and cancellation.
"""

import urllib.request
from pathlib import Path
from typing import Optional

from isoforge.errors import OperationCancelledError
from isoforge.progress import CancellationToken, ProgressCallback, report

CHUNK_SIZE = 8192


def download_file(url: str, destination: Path, timeout: float,
                  progress: Optional[ProgressCallback] = None,
                  status_text: str = "",
                  cancel_token: Optional[CancellationToken] = None) -> Path:
    """
    Download url to destination.

    Args:
        url: Source URL
        destination: File to write
        timeout: Socket timeout in seconds
        progress: Optional callback for download progress
        status_text: Status text attached to progress events
        cancel_token: Checked between chunks

    Returns:
        Path to the downloaded file

    Raises:
        RuntimeError: if the download fails; the partial file is removed
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    try:
        with urllib.request.urlopen(url, timeout=timeout) as response:
            total_size = int(response.headers.get('Content-Length', 0) or 0)
            downloaded = 0

            with open(destination, 'wb') as f:
                while True:
                    if cancel_token is not None:
                        cancel_token.raise_if_cancelled()
                    chunk = response.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    f.write(chunk)
                    downloaded += len(chunk)

                    if total_size > 0:
                        percent = (downloaded / total_size) * 100
                        report(progress, status_text,
                               f"Downloading {destination.name}: {percent:.1f}%", percent)

        if downloaded == 0:
            raise RuntimeError("empty response")
        return destination

    except OperationCancelledError:
        if destination.exists():
            destination.unlink()
        raise
    except (OSError, ValueError, RuntimeError) as e:
        if destination.exists():
            destination.unlink()
        raise RuntimeError(f"Failed to download {url}: {e}") from e
