import asyncio
import json
import logging
from pathlib import Path

import pytest

from course_engine.exceptions import NotFoundError
from course_engine.logging_config import (
    ROOT_LOGGER,
    current_span,
    get_logger,
    log_exception,
    setup_logging,
    trace_span,
)


@pytest.fixture(autouse=True)
def _reset_root_logger():
    yield
    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        handler.close()
    root.handlers.clear()


def test_nested_spans_record_parent() -> None:
    with trace_span("outer") as outer:
        with trace_span("inner", lesson_id="l1") as inner:
            assert current_span() is inner
            assert inner.parent_id == outer.span_id
            assert inner.fields == {"lesson_id": "l1"}
        assert current_span() is outer
    assert current_span() is None


def test_span_ids_do_not_collide() -> None:
    ids = set()
    for _ in range(100):
        with trace_span("load_course") as span:
            ids.add(span.span_id)
    assert len(ids) == 100


def test_concurrent_tasks_see_their_own_span() -> None:
    async def worker(name: str) -> tuple:
        with trace_span(name) as span:
            await asyncio.sleep(0)
            return span.span_id, current_span().span_id

    async def scenario():
        return await asyncio.gather(worker("a"), worker("b"))

    results = asyncio.run(scenario())
    assert all(expected == seen for expected, seen in results)
    assert results[0][0] != results[1][0]


def test_json_file_log_carries_span(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "engine.log"
    setup_logging(level="DEBUG", log_file=str(log_file), json_format=True, console=False)
    logger = get_logger("test")

    with trace_span("load_course", course_id="c1") as span:
        logger.info("loading")

    lines = [json.loads(line) for line in log_file.read_text(encoding="utf-8").splitlines()]
    record = next(line for line in lines if line["message"] == "loading")
    assert record["logger"] == "course_engine.test"
    assert record["span_id"] == span.span_id
    assert record["span_name"] == "load_course"
    assert record["span_fields"] == {"course_id": "c1"}


def test_log_exception_attaches_details(tmp_path: Path) -> None:
    log_file = tmp_path / "engine.log"
    setup_logging(level="INFO", log_file=str(log_file), json_format=True, console=False)

    try:
        raise NotFoundError("course", "c9")
    except NotFoundError as e:
        log_exception(get_logger("test"), e, "load failed")

    record = json.loads(log_file.read_text(encoding="utf-8").splitlines()[-1])
    assert record["level"] == "ERROR"
    assert record["details"]["resource_id"] == "c9"
    assert "NotFoundError" in record["exception"]
