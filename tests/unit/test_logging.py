"""Tests for log correlation context."""

import structlog

from utils.logging import job_context, video_context


def test_video_context_nests_inside_job_context():
    with job_context("job1"):
        with video_context("v1", "lec1"):
            assert structlog.contextvars.get_contextvars() == {
                "job_id": "job1",
                "video_id": "v1",
                "lecture_id": "lec1",
            }
        assert structlog.contextvars.get_contextvars() == {"job_id": "job1"}

    assert structlog.contextvars.get_contextvars() == {}


def test_video_without_lecture():
    with video_context("v2"):
        assert structlog.contextvars.get_contextvars() == {"video_id": "v2"}
