from __future__ import annotations

import base64
import json
import math
import re
import time
from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import httpx

from fatural.core.config import settings
from fatural.core.errors import ExtractionError
from fatural.core.logging import get_logger, log_event, monotonic_ms
from fatural.modules.extraction.schemas import PageImage, RawExtractedItem
from fatural.modules.extraction.vocabulary import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    DEFAULT_UNIT,
    NO_VAT,
    VAT_CODES,
    is_valid_category,
    is_valid_vat_code,
)

logger = get_logger(__name__)

_CENT = Decimal("0.01")

_SYSTEM_PROMPT = (
    "You are an expert accountant. Extract structured expense data from a receipt "
    "document provided as a series of page images.\n\n"
    "Instructions:\n"
    "1. Process ALL pages. The images are in order: the first image is page 1, the "
    "second is page 2, and so on.\n"
    "2. Extract EVERY individual line item. If a page contains a table of items, every "
    "row is a separate expense. Never summarize.\n"
    "3. Parse numbers carefully. '12.20' and '12,20' are both 12.2; '1,234.56' is 1234.56.\n"
    "4. Set page_number to the 1-based page where the item was found.\n\n"
    "Allowed categories (category MUST be exactly one of these; use "
    f'"{DEFAULT_CATEGORY}" when nothing else fits):\n'
    + "\n".join(f"- {c}" for c in CATEGORIES)
    + "\n\nAllowed VAT codes (vat_code MUST be exactly one of these, or "
    f'"{NO_VAT}"):\n'
    + "\n".join(f"- {c}" for c in VAT_CODES)
    + "\n\nFields for each item:\n"
    "- name: short descriptive item name\n"
    "- category: one of the allowed categories\n"
    "- amount: line amount as a number\n"
    "- date: YYYY-MM-DD receipt date (null if not printed)\n"
    "- merchant: merchant/store name\n"
    "- vat_code: one of the allowed VAT codes\n"
    "- page_number: 1-based page of the item\n"
    "- nui: merchant identification number (NUI/NIPT)\n"
    "- fiscal_number: fiscal number of the receipt\n"
    "- vat_number: VAT number of the receipt\n"
    "- description: extra description, if any\n"
    "- quantity: quantity (1 if not specified)\n"
    f'- unit: unit of measure ("{DEFAULT_UNIT}" if not specified)\n\n'
    'Return a single JSON object {"expenses": [...]}. If nothing can be extracted, '
    'return {"expenses": []}.'
)


def _nullable(schema: dict[str, Any]) -> dict[str, Any]:
    return {"anyOf": [schema, {"type": "null"}]}


_ITEM_PROPERTIES: dict[str, Any] = {
    "name": {"type": "string"},
    "category": {"type": "string", "enum": list(CATEGORIES)},
    "amount": {"type": "number"},
    "date": _nullable({"type": "string"}),
    "merchant": _nullable({"type": "string"}),
    "vat_code": _nullable({"type": "string", "enum": list(VAT_CODES)}),
    "page_number": {"type": "integer"},
    "nui": _nullable({"type": "string"}),
    "fiscal_number": _nullable({"type": "string"}),
    "vat_number": _nullable({"type": "string"}),
    "description": _nullable({"type": "string"}),
    "quantity": _nullable({"type": "number"}),
    "unit": _nullable({"type": "string"}),
}

_EXPENSES_RESPONSE_FORMAT: dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {
        "name": "receipt_expenses_extraction",
        "strict": True,
        "schema": {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "expenses": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": _ITEM_PROPERTIES,
                        "required": sorted(_ITEM_PROPERTIES),
                    },
                }
            },
            "required": ["expenses"],
        },
    },
}


def oracle_available() -> bool:
    return bool(settings.openai_api_key)


def extract_items(pages: Sequence[PageImage]) -> list[RawExtractedItem]:
    """
    Ask the vision model for page-tagged line items.

    Pages must be supplied in document order. Every failure mode (transport,
    timeout, refusal, malformed or out-of-vocabulary output) raises
    ExtractionError. An empty list is a valid result.
    """
    if not pages:
        raise ExtractionError("No page images to extract from")
    if not settings.openai_api_key:
        raise ExtractionError("Extraction oracle is not configured (missing OPENAI_API_KEY)")

    payload = build_request_payload(pages)
    content = _request_completion(payload, page_count=len(pages))
    obj = _parse_json_object(content)
    items = parse_oracle_payload(obj, page_count=len(pages))
    log_event(
        logger,
        "oracle.items",
        page_count=len(pages),
        item_count=len(items),
    )
    return items


def build_request_payload(pages: Sequence[PageImage]) -> dict[str, Any]:
    user_content: list[dict[str, Any]] = [
        {
            "type": "text",
            "text": f"Extract expense data from this {len(pages)}-page document.",
        }
    ]
    for page in sorted(pages, key=lambda p: p.page_number):
        encoded = base64.b64encode(page.data).decode("ascii")
        user_content.append(
            {
                "type": "image_url",
                "image_url": {
                    "url": f"data:{page.media_type};base64,{encoded}",
                    "detail": "high",
                },
            }
        )
    return {
        "model": settings.openai_model,
        "temperature": 0,
        "max_tokens": int(settings.oracle_max_tokens),
        "response_format": _EXPENSES_RESPONSE_FORMAT,
        "messages": [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": user_content},
        ],
    }


def _post(url: str, *, headers: dict[str, str], payload: dict[str, Any]) -> httpx.Response:
    resp = httpx.post(
        url,
        headers=headers,
        json=payload,
        timeout=float(settings.oracle_timeout_seconds or 120.0),
        follow_redirects=True,
    )
    resp.raise_for_status()
    return resp


def _request_completion(payload: dict[str, Any], *, page_count: int) -> str:
    headers = {
        "Authorization": f"Bearer {settings.openai_api_key}",
        "Content-Type": "application/json",
    }
    url = settings.openai_base_url.rstrip("/") + "/chat/completions"
    timeout_s = float(settings.oracle_timeout_seconds or 120.0)

    start = time.monotonic()
    log_event(
        logger,
        "oracle.request",
        model=settings.openai_model,
        page_count=page_count,
        timeout_s=timeout_s,
    )
    try:
        try:
            resp = _post(url, headers=headers, payload=payload)
        except httpx.HTTPStatusError as e:
            # Some models/endpoints don't support Structured Outputs; fall back to JSON mode.
            if e.response is None or e.response.status_code not in {400, 422}:
                raise
            log_event(
                logger,
                "oracle.fallback_json_mode",
                status_code=e.response.status_code,
            )
            payload = {**payload, "response_format": {"type": "json_object"}}
            resp = _post(url, headers=headers, payload=payload)
    except httpx.TimeoutException as e:
        log_event(logger, "oracle.error", reason="timeout", duration_ms=monotonic_ms(start))
        raise ExtractionError(f"Extraction timed out after {timeout_s:g}s") from e
    except httpx.HTTPStatusError as e:
        body = (e.response.text or "")[:500] if e.response is not None else ""
        status_code = e.response.status_code if e.response is not None else None
        log_event(
            logger,
            "oracle.error",
            reason="http_status",
            status_code=status_code,
            duration_ms=monotonic_ms(start),
        )
        raise ExtractionError(f"Extraction request failed with HTTP {status_code}: {body}") from e
    except httpx.HTTPError as e:
        log_event(
            logger,
            "oracle.error",
            reason="transport",
            error_type=type(e).__name__,
            duration_ms=monotonic_ms(start),
        )
        raise ExtractionError(f"Extraction request failed: {e}") from e

    log_event(
        logger,
        "oracle.response",
        status_code=resp.status_code,
        duration_ms=monotonic_ms(start),
    )

    try:
        raw = resp.json()
        msg = raw["choices"][0]["message"]
    except (ValueError, KeyError, IndexError, TypeError) as e:
        raise ExtractionError("Extraction response has no message") from e
    if not isinstance(msg, dict):
        raise ExtractionError("Extraction response has no message")
    if msg.get("refusal"):
        raise ExtractionError(f"Extraction refused: {str(msg['refusal'])[:300]}")
    content = msg.get("content")
    if not isinstance(content, str) or not content.strip():
        raise ExtractionError("Extraction response is empty")
    return content


def _parse_json_object(content: str) -> Any:
    c = (content or "").strip()
    try:
        return json.loads(c)
    except ValueError:
        pass

    # Fallback: extract the first {...} block (models sometimes wrap JSON in prose).
    m = re.search(r"\{.*\}", c, re.S)
    if not m:
        raise ExtractionError("Extraction response is not valid JSON")
    try:
        return json.loads(m.group(0))
    except ValueError as e:
        raise ExtractionError("Extraction response is not valid JSON") from e


def parse_oracle_payload(obj: Any, *, page_count: int) -> list[RawExtractedItem]:
    if not isinstance(obj, dict) or not isinstance(obj.get("expenses"), list):
        raise ExtractionError("Extraction response is missing the 'expenses' list")

    items: list[RawExtractedItem] = []
    for idx, raw in enumerate(obj["expenses"], start=1):
        if not isinstance(raw, dict):
            raise ExtractionError(f"Item {idx}: expected an object")
        items.append(_parse_item(raw, idx=idx, page_count=page_count))
    # Reassociate by page tag; response order is not trusted.
    items.sort(key=lambda item: item.page_number)
    return items


def _parse_item(raw: dict[str, Any], *, idx: int, page_count: int) -> RawExtractedItem:
    category = _clean_text(raw.get("category"))
    if not is_valid_category(category):
        raise ExtractionError(f"Item {idx}: category {category!r} is not in the allowed vocabulary")

    amount = _parse_decimal(raw.get("amount"))
    if amount is None:
        raise ExtractionError(f"Item {idx}: amount {raw.get('amount')!r} is not numeric")

    page_number = _parse_page_number(_first(raw, "page_number", "pageNumber"))
    if page_number is None or not 1 <= page_number <= page_count:
        raise ExtractionError(
            f"Item {idx}: page number {_first(raw, 'page_number', 'pageNumber')!r} "
            f"is outside 1..{page_count}"
        )

    vat_code = _clean_text(raw.get("vat_code")) or NO_VAT
    if not is_valid_vat_code(vat_code):
        raise ExtractionError(f"Item {idx}: VAT code {vat_code!r} is not recognised")

    raw_date = _clean_text(raw.get("date"))
    if raw_date:
        try:
            item_date = date.fromisoformat(raw_date[:10])
        except ValueError as e:
            raise ExtractionError(f"Item {idx}: date {raw_date!r} is not YYYY-MM-DD") from e
    else:
        item_date = date.today()

    raw_quantity = _first(raw, "quantity", "sasia")
    quantity = Decimal("1")
    if raw_quantity is not None and raw_quantity != "":
        parsed_quantity = _parse_decimal(raw_quantity, quantize=False)
        if parsed_quantity is None:
            raise ExtractionError(f"Item {idx}: quantity {raw_quantity!r} is not numeric")
        quantity = parsed_quantity

    return RawExtractedItem(
        name=_clean_text(raw.get("name")) or "",
        category=category,
        amount=amount,
        date=item_date,
        merchant=_clean_text(raw.get("merchant")),
        vat_code=vat_code,
        quantity=quantity,
        unit=_clean_text(_first(raw, "unit", "njesia")) or DEFAULT_UNIT,
        page_number=page_number,
        description=_clean_text(raw.get("description")),
        nui=_clean_text(raw.get("nui")),
        fiscal_number=_clean_text(_first(raw, "fiscal_number", "nr_fiskal")),
        vat_number=_clean_text(_first(raw, "vat_number", "numri_i_tvsh_se")),
    )


def _first(raw: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if raw.get(key) is not None:
            return raw[key]
    return None


def _clean_text(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _parse_page_number(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _parse_decimal(value: Any, *, quantize: bool = True) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (int, float)):
        s = str(value)
    elif isinstance(value, str):
        s = value.strip().replace(" ", "").replace("\xa0", "")
        if "," in s and "." in s:
            # The right-most separator is the decimal one.
            if s.rfind(",") > s.rfind("."):
                s = s.replace(".", "").replace(",", ".")
            else:
                s = s.replace(",", "")
        elif "," in s:
            s = s.replace(",", ".")
    else:
        return None
    try:
        d = Decimal(s)
    except InvalidOperation:
        return None
    if not d.is_finite():
        return None
    return d.quantize(_CENT, rounding=ROUND_HALF_UP) if quantize else d
