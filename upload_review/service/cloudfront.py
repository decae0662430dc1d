import asyncio
import time
from typing import List, Optional

import boto3


def create_cloudfront_client(region: str, endpoint_url: Optional[str] = None):
    return boto3.client("cloudfront", region_name=region, endpoint_url=endpoint_url)


def invalidation_path(prefix: str, file_name: str) -> str:
    return f"/{prefix}{file_name}*"


class CloudFrontInvalidator:
    def __init__(self, client):
        self._client = client

    async def invalidate(self, distribution_id: str, paths: List[str]) -> str:
        """Create an invalidation for ``paths`` and return its id."""
        if not distribution_id:
            raise ValueError("distribution ID is required")

        response = await asyncio.to_thread(
            self._client.create_invalidation,
            DistributionId=distribution_id,
            InvalidationBatch={
                "Paths": {"Quantity": len(paths), "Items": list(paths)},
                "CallerReference": str(time.time_ns()),
            },
        )
        return response["Invalidation"]["Id"]

    async def get_status(self, distribution_id: str, invalidation_id: str) -> str:
        response = await asyncio.to_thread(
            self._client.get_invalidation,
            DistributionId=distribution_id,
            Id=invalidation_id,
        )
        return response["Invalidation"]["Status"]
