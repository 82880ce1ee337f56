"""
CaseFlow — OCR Engine Adapters

Contract every engine implements:

    async extract(document, masks, profile) -> {"fields": {...}, "validationFlags": [...]}

raising ExtractionFailure on engine error. The workflow never calls an engine
directly; it goes through run_extraction(), which applies the timeout and
normalizes the answer.

Engines:
  ClaudeOcrEngine  Anthropic Messages API (document sent base64, masks and
                   profile described in the prompt, JSON answer)
  MockOcrEngine    Scripted / deterministic results for demos and tests
"""
import asyncio
import base64
import json
import time as _time
from pathlib import Path

import anthropic

from caseflow.config import OCR_MAX_TOKENS, OCR_MODEL, USE_REAL_API
from caseflow.documents import normalize_extraction
from caseflow.errors import ExtractionFailure
from caseflow.log import get_logger

logger = get_logger(__name__)

IMAGE_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp"]

EXTRACTION_PROMPT = """You are reading a scanned vendor bill. Extract the fields below and give
each one a confidence from 0 to 100 for how sure you are of the reading.

Return ONLY a JSON object of this shape, no prose:
{
  "fields": {
    "invoice_number": {"value": "...", "confidence": 0},
    "vendor_name":    {"value": "...", "confidence": 0},
    "invoice_date":   {"value": "YYYY-MM-DD", "confidence": 0},
    "due_date":       {"value": "YYYY-MM-DD", "confidence": 0},
    "po_reference":   {"value": "...", "confidence": 0},
    "currency":       {"value": "USD", "confidence": 0},
    "subtotal":       {"value": 0.0, "confidence": 0},
    "tax":            {"value": 0.0, "confidence": 0},
    "total":          {"value": 0.0, "confidence": 0},
    "line_item_1_total": {"value": 0.0, "confidence": 0}
  },
  "validationFlags": []
}

Number line items line_item_1_total, line_item_2_total, ... Omit fields that are not on
the document. Put a short snake_case flag in validationFlags for anything that looks
wrong on the page itself (e.g. "illegible_total", "handwritten_amount", "multiple_invoices").
"""

PROFILE_HINTS = {
    "fast": "Read each field once; do not re-examine unclear areas.",
    "high_accuracy": "Re-read every amount and identifier digit by digit before answering.",
    "safe": "The scan may be noisy or skewed. Prefer lower confidence over guessing.",
}


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        first_nl = text.index("\n") if "\n" in text else len(text)
        text = text[first_nl + 1:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    return text


def build_prompt(masks: list, profile: str) -> str:
    """Extraction prompt with the masked regions and profile instructions appended."""
    prompt = EXTRACTION_PROMPT
    if masks:
        lines = [f"  - {m['type']}: x={m['region']['x']}, y={m['region']['y']}, "
                 f"width={m['region']['width']}, height={m['region']['height']}" for m in masks]
        prompt += ("\nIGNORE these regions (page coordinates, origin top-left). They hold logos, "
                   "watermarks or repeated headers/footers, not bill data:\n" + "\n".join(lines) + "\n")
    hint = PROFILE_HINTS.get(profile)
    if hint:
        prompt += f"\nExtraction profile '{profile}': {hint}\n"
    elif profile:
        prompt += f"\nExtraction profile: {profile}\n"
    return prompt


# ============================================================
# CLAUDE ENGINE
# ============================================================
class ClaudeOcrEngine:
    """OCR through the Anthropic Messages API. `document["uri"]` is a local file path."""

    def __init__(self, model: str = None, max_tokens: int = None, client=None):
        self.model = model or OCR_MODEL
        self.max_tokens = max_tokens or OCR_MAX_TOKENS
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = anthropic.AsyncAnthropic()
        return self._client

    def _content_block(self, document: dict) -> dict:
        path = Path(document.get("uri") or "")
        if not path.is_file():
            raise ExtractionFailure("document file not found", {"uri": str(path)})
        with open(path, "rb") as f:
            b64_data = base64.standard_b64encode(f.read()).decode("utf-8")
        media_type = document.get("mimeType") or ""
        if media_type == "application/pdf":
            return {"type": "document", "source": {"type": "base64", "media_type": "application/pdf", "data": b64_data}}
        img_type = media_type if media_type in IMAGE_TYPES else "image/png"
        return {"type": "image", "source": {"type": "base64", "media_type": img_type, "data": b64_data}}

    async def extract(self, document: dict, masks: list, profile: str) -> dict:
        if not USE_REAL_API and self._client is None:
            raise ExtractionFailure("ANTHROPIC_API_KEY not configured")
        content_block = self._content_block(document)
        prompt = build_prompt(masks, profile)
        t0 = _time.time()
        try:
            msg = await self.client.messages.create(
                model=self.model, max_tokens=self.max_tokens,
                messages=[{"role": "user", "content": [content_block, {"type": "text", "text": prompt}]}])
        except anthropic.APIError as e:
            raise ExtractionFailure(f"OCR API error: {type(e).__name__}: {e}")
        elapsed = round((_time.time() - t0) * 1000)
        text = _strip_fences(msg.content[0].text)
        try:
            result = json.loads(text)
        except json.JSONDecodeError as e:
            raise ExtractionFailure(f"OCR answer is not JSON: {e}")
        logger.info(f"[OCR] {document.get('fileName')} read in {elapsed}ms "
                    f"({len(result.get('fields') or {})} fields, profile={profile})")
        return result


# ============================================================
# MOCK ENGINE
# ============================================================
DEFAULT_MOCK_RESULT = {
    "fields": {
        "invoice_number": {"value": "INV-1001", "confidence": 96},
        "vendor_name": {"value": "Acme Supplies", "confidence": 95},
        "invoice_date": {"value": "2026-01-15", "confidence": 93},
        "subtotal": {"value": 100.0, "confidence": 94},
        "tax": {"value": 8.0, "confidence": 92},
        "total": {"value": 108.0, "confidence": 97},
    },
    "validationFlags": [],
}


class MockOcrEngine:
    """Scripted engine. `results` maps a file name to a result dict, an Exception
    instance, or a list of those consumed one per call (the last one repeats).
    Unknown file names get `default`. Every call is recorded in `calls`."""

    def __init__(self, results: dict = None, default: dict = None, delay_s: float = 0.0):
        self.results = dict(results or {})
        self.default = default if default is not None else DEFAULT_MOCK_RESULT
        self.delay_s = delay_s
        self.calls = []

    def script(self, file_name: str, *outcomes):
        self.results[file_name] = list(outcomes)

    def _next(self, file_name: str):
        outcome = self.results.get(file_name, self.default)
        if isinstance(outcome, list):
            if not outcome:
                return self.default
            return outcome.pop(0) if len(outcome) > 1 else outcome[0]
        return outcome

    async def extract(self, document: dict, masks: list, profile: str) -> dict:
        file_name = document.get("fileName")
        self.calls.append({"fileName": file_name, "masks": [m["id"] for m in masks], "profile": profile})
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        outcome = self._next(file_name)
        if isinstance(outcome, BaseException):
            raise outcome
        return json.loads(json.dumps(outcome))


# ============================================================
# RUNNER
# ============================================================
async def run_extraction(engine, document: dict, masks: list, profile: str, timeout_s: float) -> dict:
    """Call the engine under a timeout and normalize its answer.
    Timeouts and engine errors surface as ExtractionFailure."""
    try:
        raw = await asyncio.wait_for(engine.extract(document, masks, profile), timeout=timeout_s)
    except asyncio.TimeoutError:
        raise ExtractionFailure(f"timed out after {timeout_s}s", {"timeoutS": timeout_s})
    except ExtractionFailure:
        raise
    except Exception as e:
        raise ExtractionFailure(f"{type(e).__name__}: {e}")
    return normalize_extraction(raw)
