"""
Tests for the Logseq and MyScript adapters and the retry policy.

HTTP traffic is served by httpx.MockTransport; retry delays are captured by
patching asyncio.sleep so nothing actually waits.
"""

import hashlib
import hmac
import json
import unittest
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from penbridge.adapters.logseq import LogseqTreeStore
from penbridge.adapters.memory import InMemoryTreeStore
from penbridge.adapters.myscript import (
    MM_TO_PIXELS,
    MyScriptRecognizer,
    PageFrame,
    build_request,
    generate_signature,
    parse_response,
)
from penbridge.adapters.transport import is_retryable, with_retries
from penbridge.database import DatabaseManager
from penbridge.errors import RecognitionPayloadError, TransportError, TreeStoreError
from penbridge.models import Dot, PageInfo, Stroke
from penbridge.reconcile.orchestrator import ReconciliationOrchestrator


class LogseqStub:
    """Answers Logseq API calls from a method -> response table and records them."""

    def __init__(self, responses=None, status_code=200):
        self.responses = responses or {}
        self.status_code = status_code
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        self.calls.append((request, payload))
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "nope"})
        return httpx.Response(200, json=self.responses.get(payload["method"]))


def make_store(stub, **kwargs) -> LogseqTreeStore:
    return LogseqTreeStore(
        host="http://logseq.test:12315/",
        token="secret",
        max_retries=3,
        backoff_base=1.0,
        transport=httpx.MockTransport(stub),
        **kwargs,
    )


class TestLogseqTreeStore(unittest.IsolatedAsyncioTestCase):

    async def test_request_shape(self):
        stub = LogseqStub({"logseq.App.getCurrentGraph": {"name": "notes"}})
        async with make_store(stub) as store:
            graph = await store.test_connection()

        self.assertEqual(graph, "notes")
        request, payload = stub.calls[0]
        self.assertEqual(str(request.url), "http://logseq.test:12315/api")
        self.assertEqual(request.headers["Authorization"], "Bearer secret")
        self.assertEqual(payload, {"method": "logseq.App.getCurrentGraph", "args": []})

    async def test_page_tree_conversion(self):
        stub = LogseqStub({"logseq.Editor.getPageBlocksTree": [
            {
                "uuid": "anchor",
                "content": "## Transcribed Content #Display_No_Properties",
                "children": [
                    {
                        "uuid": "milk",
                        "content": "Buy milk",
                        "properties": {"strokeYBounds": "10.00-15.00", "canonicalTranscript": "Buy milk"},
                        "children": [["uuid", "collapsed-ref"]],
                    }
                ],
            }
        ]})
        async with make_store(stub) as store:
            tree = await store.get_page_tree("Smartpen Data/B1/P1")

        milk = tree[0].children[0]
        self.assertEqual(milk.parent_uuid, "anchor")
        self.assertEqual(milk.properties["stroke-y-bounds"], "10.00-15.00")
        self.assertEqual(milk.properties["canonical-transcript"], "Buy milk")
        self.assertEqual(milk.children, [])
        self.assertEqual(stub.calls[0][1]["args"], ["Smartpen Data/B1/P1"])

    async def test_missing_page_has_empty_tree(self):
        async with make_store(LogseqStub()) as store:
            self.assertEqual(await store.get_page_tree("nowhere"), [])

    async def test_create_block_inserts_a_child(self):
        stub = LogseqStub({"logseq.Editor.insertBlock": {"uuid": "new-b12d", "content": "Call dentist"}})
        async with make_store(stub) as store:
            block = await store.create_block(
                "anchor", "Call dentist",
                properties={"stroke-y-bounds": "40.00-45.00"},
                custom_id="new-b12d",
            )

        args = stub.calls[0][1]["args"]
        self.assertEqual(args[0], "anchor")
        self.assertEqual(args[1], "Call dentist")
        self.assertEqual(args[2], {
            "sibling": False,
            "properties": {"stroke-y-bounds": "40.00-45.00"},
            "customUUID": "new-b12d",
        })
        self.assertEqual(block.uuid, "new-b12d")
        self.assertEqual(block.parent_uuid, "anchor")
        self.assertEqual(block.properties["stroke-y-bounds"], "40.00-45.00")

    async def test_create_block_without_answer(self):
        async with make_store(LogseqStub()) as store:
            with self.assertRaises(TreeStoreError):
                await store.create_block("anchor", "x")

    async def test_page_is_created_when_missing(self):
        stub = LogseqStub({"logseq.Editor.createPage": {"name": "smartpen data/b1/p1"}})
        async with make_store(stub) as store:
            page = await store.get_or_create_page("Smartpen Data/B1/P1", {"Book": "1", "Page": "1"})

        self.assertEqual(page["name"], "smartpen data/b1/p1")
        methods = [payload["method"] for _, payload in stub.calls]
        self.assertEqual(methods, ["logseq.Editor.getPage", "logseq.Editor.createPage"])
        self.assertEqual(stub.calls[1][1]["args"][1], {"Book": "1", "Page": "1"})

    async def test_server_errors_are_retried_then_raised(self):
        stub = LogseqStub(status_code=503)
        with patch("penbridge.adapters.transport.asyncio.sleep", new=AsyncMock()) as sleep:
            async with make_store(stub) as store:
                with self.assertRaises(TransportError) as ctx:
                    await store.remove_block("milk")

        self.assertEqual(len(stub.calls), 4)
        self.assertEqual(ctx.exception.attempts, 4)
        self.assertEqual([call.args[0] for call in sleep.await_args_list], [1.0, 2.0, 4.0])

    async def test_client_errors_are_not_retried(self):
        stub = LogseqStub(status_code=400)
        async with make_store(stub) as store:
            with self.assertRaises(TreeStoreError):
                await store.update_block_content("milk", "Buy oat milk")

        self.assertEqual(len(stub.calls), 1)

    async def test_error_payload_is_rejected(self):
        stub = LogseqStub({"logseq.Editor.upsertBlockProperty": {"error": "MethodNotExist"}})
        async with make_store(stub) as store:
            with self.assertRaises(TreeStoreError):
                await store.set_block_property("milk", "stroke-y-bounds", "10.00-15.00")


class TestRetryPolicy(unittest.IsolatedAsyncioTestCase):

    async def test_recovers_after_transient_failures(self):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ConnectError("refused")
            return "ok"

        with patch("penbridge.adapters.transport.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await with_retries(flaky, "flaky call", max_retries=3, backoff_base=0.5)

        self.assertEqual(result, "ok")
        self.assertEqual(len(attempts), 3)
        self.assertEqual([call.args[0] for call in sleep.await_args_list], [0.5, 1.0])

    async def test_non_retryable_errors_pass_through(self):
        async def broken():
            raise KeyError("bug")

        with self.assertRaises(KeyError):
            await with_retries(broken, "broken call")

    def test_is_retryable(self):
        request = httpx.Request("POST", "http://x/api")
        self.assertTrue(is_retryable(httpx.ReadTimeout("slow", request=request)))
        self.assertTrue(is_retryable(TransportError("down")))
        server_error = httpx.HTTPStatusError("boom", request=request, response=httpx.Response(502, request=request))
        client_error = httpx.HTTPStatusError("bad", request=request, response=httpx.Response(404, request=request))
        self.assertTrue(is_retryable(server_error))
        self.assertFalse(is_retryable(client_error))
        self.assertFalse(is_retryable(ValueError("x")))


def make_ink():
    page_info = PageInfo(book=3017, page=42)
    return [
        Stroke(start_time=1, end_time=5, page_info=page_info,
               dots=[Dot(x=10, y=10, timestamp=1, force=600), Dot(x=20, y=12, timestamp=5)]),
        Stroke(start_time=7, end_time=9, page_info=page_info,
               dots=[Dot(x=12, y=40, timestamp=7), Dot(x=30, y=44, timestamp=9)]),
    ]


def jiix_answer(frame: PageFrame):
    """Two lines, the second indented by one unit; boxes in millimetres."""
    def to_mm(page_y):
        return frame.to_pixels(0, page_y)[1] / MM_TO_PIXELS

    return {
        "label": "Buy milk\nCall dentist",
        "words": [
            {"label": "Buy", "bounding-box": {"x": 3, "y": to_mm(10), "width": 4, "height": 5}},
            {"label": " "},
            {"label": "milk", "bounding-box": {"x": 9, "y": to_mm(10), "width": 6, "height": 5}},
            {"label": "\n"},
            {"label": "Call", "bounding-box": {"x": 11, "y": to_mm(40), "width": 5, "height": 5}},
            {"label": " "},
            {"label": "dentist", "bounding-box": {"x": 17, "y": to_mm(40), "width": 9, "height": 5}},
        ],
    }


def test_signature_matches_hmac_sha512():
    expected = hmac.new(b"appkeyhmackey", b"{}", hashlib.sha512).hexdigest()
    assert generate_signature("appkey", "hmackey", "{}") == expected


def test_frame_maps_back_to_page_units():
    frame = PageFrame(5, 8, 50, 60)
    px, py = frame.to_pixels(20, 33)
    assert px > 0 and py > 0
    assert frame.y_to_page(py / MM_TO_PIXELS) == pytest.approx(33)


def test_build_request_uses_pixel_frame():
    strokes = make_ink()
    frame = PageFrame.from_strokes(strokes)
    body = build_request(strokes, frame, "de_DE")

    assert body["configuration"]["lang"] == "de_DE"
    assert len(body["strokeGroups"]) == 2
    first = body["strokeGroups"][0]["strokes"][0]
    assert first["x"][0] == pytest.approx(10)
    assert first["y"][0] == pytest.approx(10)
    assert first["t"] == [1, 5]
    assert first["p"] == [0.6, 0.5]
    assert body["width"] > 0 and body["height"] > 0


def test_parse_response_lines_bounds_and_indent():
    strokes = make_ink()
    frame = PageFrame.from_strokes(strokes)
    result = parse_response(jiix_answer(frame), frame, ["s1", "s7"])

    assert [line.text for line in result.lines] == ["Buy milk", "Call dentist"]
    assert [line.indent_level for line in result.lines] == [0, 1]
    assert result.lines[0].y_bounds.min_y == pytest.approx(10)
    assert result.lines[1].y_bounds.min_y == pytest.approx(40)
    assert result.lines[1].y_bounds.max_y > result.lines[1].y_bounds.min_y
    assert result.transcribed_stroke_ids == ["s1", "s7"]
    assert result.text == "Buy milk\nCall dentist"


def test_parse_response_without_words_still_yields_lines():
    frame = PageFrame(0, 0, 10, 10)
    result = parse_response({"label": "Buy milk\n\nCall dentist"}, frame, ["s1"])
    assert [line.text for line in result.lines] == ["Buy milk", "Call dentist"]
    assert all(line.y_bounds is None for line in result.lines)


@pytest.mark.parametrize("payload", [
    ["not", "an", "object"],
    {"label": "Buy", "words": [{"label": "Buy", "bounding-box": {"x": 0, "y": 0, "height": "tall"}}]},
])
def test_malformed_payload_is_rejected(payload):
    with pytest.raises(RecognitionPayloadError):
        parse_response(payload, PageFrame(0, 0, 10, 10), ["s1"])


class TestMyScriptRecognizer(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.db = DatabaseManager(":memory:")
        self.db.connect()
        self.db.initialize_database()

    async def asyncTearDown(self):
        self.db.disconnect()

    def make_recognizer(self, handler) -> MyScriptRecognizer:
        return MyScriptRecognizer(
            application_key="appkey",
            hmac_key="hmackey",
            api_url="https://myscript.test/batch",
            max_retries=0,
            database_manager=self.db,
            transport=httpx.MockTransport(handler),
        )

    async def test_recognize_signs_and_parses(self):
        strokes = make_ink()
        frame = PageFrame.from_strokes(strokes)
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=jiix_answer(frame))

        async with self.make_recognizer(handler) as recognizer:
            result = await recognizer.recognize(strokes)

        self.assertEqual([line.text for line in result.lines], ["Buy milk", "Call dentist"])
        self.assertEqual(result.transcribed_stroke_ids, ["s1", "s7"])

        request = seen[0]
        self.assertEqual(request.headers["applicationKey"], "appkey")
        self.assertEqual(request.headers["hmac"], generate_signature("appkey", "hmackey", request.content.decode()))

        calls = self.db.get_recognition_calls()
        self.assertEqual(len(calls), 1)
        self.assertTrue(calls[0]["success"])
        self.assertEqual(calls[0]["page_key"], "S0/O0/B3017/P42")
        self.assertEqual(calls[0]["line_count"], 2)

    async def test_rejected_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "bad key"})

        async with self.make_recognizer(handler) as recognizer:
            with self.assertRaises(RecognitionPayloadError):
                await recognizer.recognize(make_ink())

        calls = self.db.get_recognition_calls()
        self.assertFalse(calls[0]["success"])
        self.assertIn("401", calls[0]["error_message"])

    async def test_unreachable_service(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        async with self.make_recognizer(handler) as recognizer:
            with self.assertRaises(TransportError):
                await recognizer.recognize(make_ink())

    async def test_strokes_without_dots_are_rejected(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with self.make_recognizer(handler) as recognizer:
            with self.assertRaises(RecognitionPayloadError):
                await recognizer.recognize([Stroke(start_time=1, end_time=2)])

    async def test_pass_over_dotless_ink_still_reports(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(500)

        async with self.make_recognizer(handler) as recognizer:
            orchestrator = ReconciliationOrchestrator(InMemoryTreeStore(), recognizer)
            report = await orchestrator.reconcile_page(
                PageInfo(book=3017, page=42), [Stroke(start_time=1, end_time=2)]
            )

        self.assertIsNone(report.error)
        self.assertEqual([w.subject_id for w in report.warnings_of("unmatched-stroke")], ["s1"])
        self.assertEqual(seen, [])

    async def test_missing_credentials(self):
        async with self.make_recognizer(lambda request: httpx.Response(500)) as recognizer:
            recognizer.application_key = ""
            with self.assertRaises(ValueError):
                await recognizer.recognize(make_ink())

        self.assertEqual(self.db.get_recognition_calls(), [])


if __name__ == '__main__':
    unittest.main()
