"""Tests for the R2 segment mirror, using botocore's Stubber in place of R2."""

import boto3
import pytest
from botocore.stub import Stubber

from services.r2_storage import R2SegmentStore
from services.segment_store import mirror_key

BUCKET = "segments-test"


@pytest.fixture
def s3_client():
    return boto3.client(
        "s3",
        region_name="auto",
        endpoint_url="https://account.r2.cloudflarestorage.com",
        aws_access_key_id="test",
        aws_secret_access_key="test",
    )


@pytest.fixture
def store(s3_client):
    return R2SegmentStore("account", "test", "test", bucket_name=BUCKET, client=s3_client)


def test_public_url(s3_client):
    plain = R2SegmentStore("account", "test", "test", bucket_name=BUCKET, client=s3_client)
    cdn = R2SegmentStore("account", "test", "test", bucket_name=BUCKET, public_url="https://media.example.com/", client=s3_client)

    assert plain.public_url_for("videos/v1/720p/segment-1.ts") == f"s3://{BUCKET}/videos/v1/720p/segment-1.ts"
    assert cdn.public_url_for("videos/v1/720p/segment-1.ts") == "https://media.example.com/videos/v1/720p/segment-1.ts"


class TestFindByKey:
    @pytest.mark.asyncio
    async def test_existing_object(self, store, s3_client):
        key = mirror_key("v1", "720p", 3)
        with Stubber(s3_client) as stubber:
            stubber.add_response(
                "head_object",
                {"ContentLength": 1024, "ContentType": "video/MP2T"},
                {"Bucket": BUCKET, "Key": key},
            )
            handle = await store.find_by_key(key)

        assert handle.key == key
        assert handle.size == 1024
        assert handle.content_type == "video/MP2T"

    @pytest.mark.asyncio
    async def test_missing_object(self, store, s3_client):
        with Stubber(s3_client) as stubber:
            stubber.add_client_error("head_object", service_error_code="404", http_status_code=404)
            assert await store.find_by_key(mirror_key("v1", "720p", 9)) is None


@pytest.mark.asyncio
async def test_delete_prefix(store, s3_client):
    keys = [mirror_key("v1", "720p", n) for n in (1, 2)]
    with Stubber(s3_client) as stubber:
        stubber.add_response(
            "list_objects_v2",
            {"Contents": [{"Key": key} for key in keys], "IsTruncated": False},
            {"Bucket": BUCKET, "Prefix": "videos/v1"},
        )
        stubber.add_response(
            "delete_objects",
            {"Deleted": [{"Key": key} for key in keys]},
            {"Bucket": BUCKET, "Delete": {"Objects": [{"Key": key} for key in keys]}},
        )
        deleted = await store.delete_prefix("videos/v1")

    assert deleted == 2
