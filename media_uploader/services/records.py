"""Record repository: stores uploaded media URLs on their owning record."""
import logging

from ..models import UploadKind
from ..protocols import IRecordRepository
from .api_client import HTTPAPIClient

logger = logging.getLogger(__name__)

# kind -> (table, column)
MEDIA_COLUMNS = {
    UploadKind.VIDEO: ("boulders", "beta_video_url"),
    UploadKind.THUMBNAIL: ("boulders", "thumbnail_url"),
    UploadKind.IMAGE: ("sectors", "image_url"),
}


class RestRecordRepository(IRecordRepository):
    """PATCHes the media URL column of a boulder or sector row."""

    def __init__(self, api: HTTPAPIClient):
        self._api = api

    async def update_media_url(self, record_id: str, kind: UploadKind, url: str) -> None:
        table, column = MEDIA_COLUMNS[kind]
        await self._api.patch(
            f"/rest/v1/{table}",
            json={column: url},
            params={"id": f"eq.{record_id}"},
            headers={"Prefer": "return=minimal"},
        )
        logger.info("Updated %s.%s for %s", table, column, record_id)
