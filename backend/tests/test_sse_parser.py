import asyncio

import httpx

from chatrelay.providers.sse import DONE_SENTINEL, iter_sse_data, iter_sse_json


def _collect(body: bytes, reader=iter_sse_data) -> list:
    async def run():
        response = httpx.Response(200, content=body)
        return [item async for item in reader(response)]

    return asyncio.run(run())


def test_comments_and_non_data_fields_are_skipped():
    body = b": keepalive\n\nevent: message\nid: 3\ndata: {\"a\": 1}\n\n"
    assert _collect(body) == ['{"a": 1}']


def test_multiline_data_is_joined():
    body = b"data: first\ndata: second\n\n"
    assert _collect(body) == ["first\nsecond"]


def test_trailing_event_without_blank_line_is_flushed():
    assert _collect(b"data: tail") == ["tail"]


def test_json_reader_stops_at_done_and_skips_garbage():
    body = b"data: {\"n\": 1}\n\ndata: not-json\n\ndata: [1, 2]\n\ndata: [DONE]\n\ndata: {\"n\": 2}\n\n"
    assert _collect(body, iter_sse_json) == [{"n": 1}, DONE_SENTINEL]
