from urllib.parse import quote

import httpx
import structlog

from .errors import AssetNotFound, BucketNameMissing

logger = structlog.get_logger()


class AssetProbe:
    """Checks that a video asset exists in the assets bucket with a HEAD request."""

    def __init__(self, bucket_url: str, timeout: float = 5.0):
        self.bucket_url = bucket_url.rstrip("/")
        self.timeout = timeout

    async def ensure_exists(self, asset_name: str) -> None:
        if not self.bucket_url:
            raise BucketNameMissing("Video assets bucket is not configured")

        url = f"{self.bucket_url}/{quote(asset_name)}"
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.head(url)

        # Buckets without list permission answer 403 for missing keys
        if resp.status_code in (403, 404):
            logger.info("asset_not_found", asset_name=asset_name, status_code=resp.status_code)
            raise AssetNotFound(f"Asset {asset_name} not found")
        resp.raise_for_status()
