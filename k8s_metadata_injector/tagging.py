import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from botocore.utils import InstanceMetadataRegionFetcher

from .errors import TaggingError
from .helpers import TagSet

log = logging.getLogger("k8s-metadata-injector")


class TagCreator:
    def create_tags(self, resource_id: str, tags: TagSet) -> None:
        """
        Apply tags to the cloud resource. Raise TaggingError on failure.
        """
        raise NotImplementedError


def discover_region() -> str:
    """Region of the instance we run on, from the EC2 instance metadata service."""
    region = InstanceMetadataRegionFetcher().retrieve_region()
    log.info("Discovered AWS region from instance metadata: %s", region)
    return region or ""


class EC2Tagger(TagCreator):
    def __init__(self, region: str = "", client: Any = None) -> None:
        if client is None:
            client = boto3.client("ec2", region_name=region or discover_region() or None)
        self._client = client

    def create_tags(self, resource_id: str, tags: TagSet) -> None:
        try:
            self._client.create_tags(
                Resources=[resource_id],
                Tags=[{"Key": k, "Value": v} for k, v in tags],
            )
        except (BotoCoreError, ClientError) as e:
            raise TaggingError(f"failed to create ebs tags on {resource_id}: {e}") from e
