"""
MyScript recognition client for PenBridge.

Sends stroke batches to MyScript's iink batch REST endpoint and turns the
JIIX answer into validated RecognitionResult objects. Coordinates go out in
96 dpi pixels; JIIX bounding boxes come back in millimetres of that frame
and are mapped to page-local Ncode units.
"""

import hashlib
import hmac
import json
import logging
import time
from statistics import median
from typing import Any, Dict, List, Optional, Tuple

import httpx
from pydantic import ValidationError

from ..config import config
from ..errors import RecognitionPayloadError, TransportError
from ..models import Line, RecognitionResult, Stroke, YBounds
from .base import RecognitionService
from .transport import with_retries

DPI = 96
NCODE_TO_MM = 2.371
MM_TO_PIXELS = DPI / 25.4
NCODE_TO_PIXELS = NCODE_TO_MM * MM_TO_PIXELS
PADDING = 10
INDENT_UNIT_FACTOR = 1.5
DEFAULT_WORD_HEIGHT = 20.0


def generate_signature(application_key: str, hmac_key: str, message: str) -> str:
    """HMAC-SHA512 over the request body, keyed by application key + HMAC key."""
    key = (application_key + hmac_key).encode("utf-8")
    return hmac.new(key, message.encode("utf-8"), hashlib.sha512).hexdigest()


class PageFrame:
    """
    Mapping between page-local Ncode units and the pixel frame sent to MyScript.
    """

    def __init__(self, min_x: float, min_y: float, max_x: float, max_y: float):
        self.min_x = min_x
        self.min_y = min_y
        self.max_x = max_x
        self.max_y = max_y

    @classmethod
    def from_strokes(cls, strokes: List[Stroke]) -> "PageFrame":
        xs = [dot.x for stroke in strokes for dot in stroke.dots]
        ys = [dot.y for stroke in strokes for dot in stroke.dots]
        if not xs:
            raise ValueError("Strokes contain no dots")
        return cls(min(xs), min(ys), max(xs), max(ys))

    def to_pixels(self, x: float, y: float) -> Tuple[float, float]:
        return (
            (x - self.min_x) * NCODE_TO_PIXELS + PADDING,
            (y - self.min_y) * NCODE_TO_PIXELS + PADDING,
        )

    def y_to_page(self, jiix_y: float) -> float:
        """Map a JIIX coordinate (millimetres in the request frame) back to page units."""
        pixel_y = jiix_y * MM_TO_PIXELS
        return (pixel_y - PADDING) / NCODE_TO_PIXELS + self.min_y

    @property
    def width(self) -> int:
        return int((self.max_x - self.min_x) * NCODE_TO_PIXELS + PADDING * 2 + 0.999)

    @property
    def height(self) -> int:
        return int((self.max_y - self.min_y) * NCODE_TO_PIXELS + PADDING * 2 + 0.999)


def build_request(strokes: List[Stroke], frame: PageFrame, lang: str = "en_US") -> Dict[str, Any]:
    """Build the iink batch request body."""
    stroke_groups = []
    for stroke in strokes:
        xs, ys, ts, ps = [], [], [], []
        for dot in stroke.dots:
            px, py = frame.to_pixels(dot.x, dot.y)
            xs.append(px)
            ys.append(py)
            ts.append(dot.timestamp)
            ps.append((dot.force if dot.force is not None else 500) / 1000)
        stroke_groups.append({"strokes": [{"x": xs, "y": ys, "t": ts, "p": ps}]})

    return {
        "xDPI": DPI,
        "yDPI": DPI,
        "contentType": "Text",
        "configuration": {
            "lang": lang,
            "text": {
                "guides": {"enable": False},
                "mimeTypes": ["text/plain", "application/vnd.myscript.jiix"],
            },
            "export": {
                "jiix": {
                    "bounding-box": True,
                    "strokes": True,
                    "text": {"chars": True, "words": True},
                }
            },
        },
        "strokeGroups": stroke_groups,
        "width": frame.width,
        "height": frame.height,
    }


def parse_response(data: Dict[str, Any], frame: PageFrame, stroke_ids: List[str]) -> RecognitionResult:
    """
    Turn a JIIX answer into lines.

    MyScript's ``label`` carries the authoritative line breaks; words are
    consumed in order to give each line its horizontal position and vertical
    extent. Indentation is measured from the leftmost line in units of 1.5x
    the median word height.

    Raises:
        RecognitionPayloadError: if the payload does not have the expected shape
    """
    if not isinstance(data, dict):
        raise RecognitionPayloadError(f"Expected a JSON object, got {type(data).__name__}")

    label = data.get("label") or ""
    words = [w for w in (data.get("words") or []) if isinstance(w, dict)]
    labelled_words = [w for w in words if (w.get("label") or "").strip()]

    raw_lines = []
    word_index = 0
    for line_text in label.split("\n"):
        if not line_text.strip():
            continue
        line_words = []
        for _ in line_text.split():
            if word_index >= len(labelled_words):
                break
            line_words.append(labelled_words[word_index])
            word_index += 1
        boxes = [w["bounding-box"] for w in line_words if isinstance(w.get("bounding-box"), dict)]
        raw_lines.append({"text": line_text, "boxes": boxes})

    lines = []
    try:
        heights = [float(w["bounding-box"].get("height", 0)) for w in words if isinstance(w.get("bounding-box"), dict)]
        indent_unit = (median(heights) if heights else DEFAULT_WORD_HEIGHT) * INDENT_UNIT_FACTOR
        xs = [min(float(b.get("x", 0)) for b in line["boxes"]) for line in raw_lines if line["boxes"]]
        base_x = min(xs) if xs else 0.0

        for line in raw_lines:
            boxes = line["boxes"]
            y_bounds = None
            indent = 0
            if boxes:
                left = min(float(b.get("x", 0)) for b in boxes)
                top = min(float(b.get("y", 0)) for b in boxes)
                bottom = max(float(b.get("y", 0)) + float(b.get("height", 0)) for b in boxes)
                y_bounds = YBounds(min_y=frame.y_to_page(top), max_y=frame.y_to_page(bottom))
                indent = max(0, round((left - base_x) / indent_unit)) if indent_unit > 0 else 0
            lines.append(Line(text=line["text"], y_bounds=y_bounds, indent_level=indent))
    except (ValidationError, TypeError, ValueError) as e:
        raise RecognitionPayloadError(f"Malformed MyScript word data: {e}") from e

    return RecognitionResult(lines=lines, transcribed_stroke_ids=list(stroke_ids), text=label)


class MyScriptRecognizer(RecognitionService):
    """
    Handwriting recognition through MyScript Cloud.
    """

    def __init__(self, application_key: Optional[str] = None, hmac_key: Optional[str] = None,
                 lang: Optional[str] = None, api_url: Optional[str] = None,
                 timeout: Optional[float] = None, max_retries: Optional[int] = None,
                 backoff_base: Optional[float] = None, database_manager=None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize the recognizer.

        Args:
            application_key: MyScript application key (defaults to config value)
            hmac_key: MyScript HMAC key (defaults to config value)
            lang: Recognition language
            api_url: Batch endpoint URL
            timeout: Request timeout in seconds
            max_retries: Retries for transport failures
            backoff_base: First retry delay in seconds
            database_manager: Optional database manager for call logging
            transport: Optional httpx transport, used by tests
        """
        self.application_key = application_key or config.myscript_application_key
        self.hmac_key = hmac_key or config.myscript_hmac_key
        self.lang = lang or config.myscript_lang
        self.api_url = api_url or config.myscript_api_url
        self.max_retries = max_retries if max_retries is not None else config.max_retries
        self.backoff_base = backoff_base if backoff_base is not None else config.backoff_base
        self.db = database_manager
        self.client = httpx.AsyncClient(timeout=timeout or config.myscript_timeout, transport=transport)

    async def __aenter__(self):
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.client.aclose()

    async def recognize(self, strokes: List[Stroke]) -> RecognitionResult:
        if not strokes:
            raise ValueError("No strokes to transcribe")
        if not self.application_key or not self.hmac_key:
            raise ValueError("MyScript API credentials not configured")

        try:
            frame = PageFrame.from_strokes(strokes)
        except ValueError as e:
            raise RecognitionPayloadError(f"Cannot build a recognition request: {e}") from e
        message = json.dumps(build_request(strokes, frame, self.lang))
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, application/vnd.myscript.jiix",
            "applicationKey": self.application_key,
            "hmac": generate_signature(self.application_key, self.hmac_key, message),
        }

        async def send() -> Dict[str, Any]:
            response = await self.client.post(self.api_url, content=message, headers=headers)
            response.raise_for_status()
            return response.json()

        start_time = time.time()
        success = False
        error_message = None
        line_count = 0
        try:
            data = await with_retries(
                send,
                "MyScript recognition",
                max_retries=self.max_retries,
                backoff_base=self.backoff_base,
            )
            result = parse_response(data, frame, [stroke.id for stroke in strokes])
            line_count = len(result.lines)
            success = True
            return result
        except httpx.HTTPStatusError as e:
            error_message = f"MyScript API error ({e.response.status_code}): {e.response.text}"
            raise RecognitionPayloadError(error_message) from e
        except ValueError as e:
            error_message = f"MyScript returned invalid JSON: {e}"
            raise RecognitionPayloadError(error_message) from e
        except (TransportError, RecognitionPayloadError) as e:
            error_message = str(e)
            raise
        finally:
            execution_time_ms = int((time.time() - start_time) * 1000)
            if self.db:
                try:
                    self.db.log_recognition_call(
                        page_key=self._page_key(strokes),
                        stroke_count=len(strokes),
                        line_count=line_count,
                        success=success,
                        error_message=error_message,
                        execution_time_ms=execution_time_ms,
                    )
                except Exception as log_error:
                    logging.warning(f"Failed to log recognition call: {log_error}")

    @staticmethod
    def _page_key(strokes: List[Stroke]) -> Optional[str]:
        for stroke in strokes:
            if stroke.page_info is not None:
                return stroke.page_info.key
        return None
