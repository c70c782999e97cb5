"""Media proxy with byte-range support."""

import logging
import re
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.responses import Response

from app.api.deps import get_fetcher
from app.core.exceptions import MediaFetchError
from app.infrastructure.channels.base import ByteRange, MediaFetcher

logger = logging.getLogger(__name__)

router = APIRouter()

_RANGE_RE = re.compile(r"^bytes=(\d+)-(\d*)$")


def parse_range(header: str | None) -> ByteRange | None:
    """Parse a single ``bytes=a-b`` range. Anything else is ignored."""
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if not match:
        return None
    start = int(match.group(1))
    end = int(match.group(2)) if match.group(2) else None
    if end is not None and end < start:
        return None
    return ByteRange(start=start, end=end)


def _unsatisfiable(total: int | None) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE,
        detail="Requested range not satisfiable",
        headers={"Content-Range": f"bytes */{total if total is not None else '*'}"},
    )


@router.get("/{media_id}")
async def get_media(
    media_id: str,
    fetcher: Annotated[MediaFetcher, Depends(get_fetcher)],
    range_header: Annotated[str | None, Header(alias="Range")] = None,
) -> Response:
    """Stream provider media, honouring a single byte range."""
    byte_range = parse_range(range_header)
    try:
        media = await fetcher.fetch(media_id, byte_range)
    except MediaFetchError as e:
        if e.status_code == status.HTTP_416_REQUESTED_RANGE_NOT_SATISFIABLE:
            raise _unsatisfiable(None) from e
        logger.warning(f"Media fetch failed for {media_id}: {e}")
        code = status.HTTP_404_NOT_FOUND if e.status_code == 404 else status.HTTP_502_BAD_GATEWAY
        raise HTTPException(status_code=code, detail="Media unavailable") from e

    headers = {"Accept-Ranges": "bytes"}

    if media.is_partial:
        headers["Content-Range"] = media.content_range
        return Response(
            content=media.content,
            status_code=status.HTTP_206_PARTIAL_CONTENT,
            media_type=media.content_type,
            headers=headers,
        )

    if byte_range is None:
        return Response(content=media.content, media_type=media.content_type, headers=headers)

    # Provider returned the whole body; slice it here
    total = len(media.content)
    if byte_range.start >= total:
        raise _unsatisfiable(total)
    end = total - 1 if byte_range.end is None else min(byte_range.end, total - 1)
    headers["Content-Range"] = f"bytes {byte_range.start}-{end}/{total}"
    return Response(
        content=media.content[byte_range.start:end + 1],
        status_code=status.HTTP_206_PARTIAL_CONTENT,
        media_type=media.content_type,
        headers=headers,
    )
