"""
Tolerant JSON extraction for completion-backend output.

The backend is asked for JSON but frequently answers with fenced blocks,
reasoning tags, Python-style literals, truncated objects or plain Markdown.
`extract` walks an ordered ladder of strategies; the first one that yields a
JSON object wins, and a shaped fallback is returned when none does.
"""

from __future__ import annotations

import ast
import json
import logging
import re
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Type, TypeVar

from models import StageResponse

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=StageResponse)

_REASONING_BLOCK_RE = re.compile(
    r"<(think|thinking|reasoning|reflection)\b[^>]*>.*?</\1\s*>",
    flags=re.IGNORECASE | re.DOTALL,
)
_TAG_RE = re.compile(r"</?[A-Za-z][A-Za-z0-9_:-]*(?:\s[^<>]*)?/?>")
_JSON_FENCE_RE = re.compile(r"```\s*(?:json|JSON|json5)\s*\n?(.*?)(?:```|$)", flags=re.DOTALL)
_ANY_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*\n?(.*?)```", flags=re.DOTALL)
_BULLET_RE = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s+(.*\S)\s*$")
_HEADING_RE = re.compile(r"^\s*#{1,6}\s+(.*\S)\s*$")
_BOLD_HEADING_RE = re.compile(r"^\s*\*\*([^*]+?)\*\*\s*:?\s*(.*)$")
_LABEL_HEADING_RE = re.compile(r"^\s*([A-Za-z][A-Za-z0-9 /&()-]{2,60}):\s*(.*)$")


class ExtractionResult(NamedTuple):
    payload: Dict[str, Any]
    response: Any
    strategy: str


# ---- Public API ----


def extract(raw_text: Optional[str], response_cls: Type[ResponseT]) -> ExtractionResult:
    """
    Returns the best-effort payload for `raw_text` and its typed response.

    Never raises.
    """
    text = raw_text if isinstance(raw_text, str) else ""
    try:
        payload, strategy = _run_ladder(text, response_cls)
    except Exception as exc:
        logger.warning("JSON extraction ladder failed unexpectedly for %s: %s", response_cls.__name__, exc)
        payload, strategy = response_cls.fallback_payload(text.strip()), "fallback"
    if strategy != "balanced_object" and strategy != "direct":
        logger.info("Extracted %s via %s strategy.", response_cls.__name__, strategy)
    return ExtractionResult(payload=payload, response=response_cls.from_partial(payload), strategy=strategy)


def parse_json_object(raw_text: str) -> Optional[Dict[str, Any]]:
    """JSON-only subset of the ladder (no Markdown synthesis, no fallback)."""
    cleaned = strip_tags(raw_text or "")
    fenced = fenced_json_block(cleaned)
    if fenced is not None:
        return fenced
    body = _fence_body(cleaned) or cleaned
    for strategy in (balanced_object, direct_parse, repaired_object):
        parsed = strategy(body)
        if parsed is not None:
            return parsed
    return None


# ---- Ladder ----


def _run_ladder(text: str, response_cls: Type[StageResponse]) -> Tuple[Dict[str, Any], str]:
    cleaned = strip_tags(text)

    fenced = fenced_json_block(cleaned)
    if fenced is not None:
        return fenced, "fenced_block"

    # A malformed fenced block still narrows the repair candidates.
    body = _fence_body(cleaned) or cleaned

    steps: List[Tuple[str, Callable[[str], Optional[Dict[str, Any]]]]] = [
        ("balanced_object", balanced_object),
        ("direct", direct_parse),
        ("repaired", repaired_object),
    ]
    for name, strategy in steps:
        parsed = strategy(body)
        if parsed is not None:
            return parsed, name

    if looks_like_markdown(body):
        return synthesize_from_markdown(body, response_cls), "markdown"

    recovered = recover_key_values(body, list(response_cls.model_fields.keys()))
    if recovered is not None:
        return recovered, "key_values"

    return response_cls.fallback_payload(text.strip()), "fallback"


def strip_tags(text: str) -> str:
    without_reasoning = _REASONING_BLOCK_RE.sub("", text or "")
    return _TAG_RE.sub("", without_reasoning).strip()


def fenced_json_block(text: str) -> Optional[Dict[str, Any]]:
    match = _JSON_FENCE_RE.search(text)
    if not match:
        return None
    return _loads_object(match.group(1).strip())


def balanced_object(text: str) -> Optional[Dict[str, Any]]:
    idx = text.find("{")
    while idx != -1:
        segment = extract_balanced_segment(text, idx)
        if segment is None:
            return None
        parsed = _loads_object(segment)
        if parsed is not None:
            return parsed
        # Nested braces belong to the failed span; resume after it.
        idx = text.find("{", idx + len(segment))
    return None


def direct_parse(text: str) -> Optional[Dict[str, Any]]:
    return _loads_object(text.strip())


def repaired_object(text: str) -> Optional[Dict[str, Any]]:
    start = text.find("{")
    if start == -1:
        return None
    candidate = text[start:]
    end = candidate.rfind("}")
    if end != -1 and extract_balanced_segment(candidate, 0) is not None:
        candidate = candidate[: end + 1]

    repairs: List[Callable[[str], str]] = [
        strip_comments,
        quote_bare_keys,
        normalize_single_quotes,
        python_literals_to_json,
        drop_trailing_commas,
        escape_inner_quotes,
        close_truncated,
    ]
    current = candidate
    for repair in repairs:
        current = repair(current)
        parsed = _loads_object(current)
        if parsed is not None:
            return parsed

    literal = _literal_eval_object(candidate)
    if literal is not None:
        return literal
    return None


def looks_like_markdown(text: str) -> bool:
    stripped = (text or "").strip()
    if not stripped:
        return False
    if stripped.startswith("#"):
        return True
    for line in stripped.splitlines():
        if _HEADING_RE.match(line) or _BOLD_HEADING_RE.match(line):
            return True
        label = _LABEL_HEADING_RE.match(line)
        if label and not label.group(2).strip():
            return True
    return False


def synthesize_from_markdown(text: str, response_cls: Type[StageResponse]) -> Dict[str, Any]:
    """
    Maps labelled Markdown sections onto the model's list fields.

    The full cleaned text is kept under the model's reference field.
    """
    payload = response_cls.fallback_payload(text)
    sections: Dict[str, List[str]] = {}
    loose_bullets: List[str] = []
    current_field: Optional[str] = None
    title: Optional[str] = None

    for line in text.splitlines():
        if not line.strip():
            continue
        header, inline = _match_heading(line)
        if header is not None:
            if title is None and _HEADING_RE.match(line):
                title = header
            current_field = _field_for_header(header, response_cls)
            if current_field and inline:
                sections.setdefault(current_field, []).append(inline)
            continue
        bullet = _BULLET_RE.match(line)
        item = bullet.group(1).strip() if bullet else line.strip()
        if current_field:
            sections.setdefault(current_field, []).append(item)
        elif bullet:
            loose_bullets.append(item)

    if not sections and loose_bullets and response_cls.SECTION_LABELS:
        first_field = next(iter(response_cls.SECTION_LABELS))
        sections[first_field] = loose_bullets

    payload.update(sections)
    if title and "report_type_analyzed" in response_cls.model_fields:
        payload["report_type_analyzed"] = title
    return payload


def recover_key_values(text: str, expected_keys: List[str]) -> Optional[Dict[str, Any]]:
    recovered: Dict[str, Any] = {}
    for key in expected_keys:
        value = extract_key_value(text, key)
        if value is not None:
            recovered[key] = value
    return recovered or None


# ---- Repairs ----


def strip_comments(text: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    idx = 0
    while idx < len(text):
        ch = text[idx]
        if in_string:
            out.append(ch)
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            idx += 1
            continue
        if ch == '"':
            in_string = True
            out.append(ch)
            idx += 1
            continue
        if text.startswith("//", idx):
            newline = text.find("\n", idx)
            idx = len(text) if newline == -1 else newline
            continue
        if text.startswith("/*", idx):
            close = text.find("*/", idx + 2)
            idx = len(text) if close == -1 else close + 2
            continue
        out.append(ch)
        idx += 1
    return "".join(out)


def quote_bare_keys(text: str) -> str:
    return re.sub(
        r'([{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)',
        lambda m: f'{m.group(1)}"{m.group(2)}"{m.group(3)}',
        text,
    )


def normalize_single_quotes(text: str) -> str:
    out: List[str] = []
    quote: Optional[str] = None
    idx = 0
    while idx < len(text):
        ch = text[idx]
        if quote is None:
            if ch in "\"'":
                quote = ch
                out.append('"')
            else:
                out.append(ch)
        elif ch == "\\" and idx + 1 < len(text):
            nxt = text[idx + 1]
            # \' is not a valid JSON escape.
            out.append("'" if nxt == "'" else ch + nxt)
            idx += 2
            continue
        elif ch == quote and (quote == '"' or _closes_string(text, idx)):
            quote = None
            out.append('"')
        elif ch == '"':
            out.append('\\"')
        else:
            out.append(ch)
        idx += 1
    return "".join(out)


def python_literals_to_json(text: str) -> str:
    text = re.sub(r"(?<![\"\w])True(?![\"\w])", "true", text)
    text = re.sub(r"(?<![\"\w])False(?![\"\w])", "false", text)
    return re.sub(r"(?<![\"\w])None(?![\"\w])", "null", text)


def drop_trailing_commas(text: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", text)


def escape_inner_quotes(text: str) -> str:
    out: List[str] = []
    in_string = False
    escaped = False
    for idx, ch in enumerate(text):
        if not in_string:
            if ch == '"':
                in_string = True
            out.append(ch)
            continue
        if escaped:
            escaped = False
            out.append(ch)
            continue
        if ch == "\\":
            escaped = True
            out.append(ch)
            continue
        if ch == '"':
            if _closes_string(text, idx):
                in_string = False
                out.append(ch)
            else:
                out.append('\\"')
            continue
        if ch == "\n":
            out.append("\\n")
            continue
        out.append(ch)
    return "".join(out)


def close_truncated(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        return cleaned

    in_string = False
    escaped = False
    stack: List[str] = []
    close_for = {"{": "}", "[": "]"}

    for idx, ch in enumerate(cleaned):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
            continue
        if ch in "{[":
            stack.append(close_for[ch])
            continue
        if ch in "}]" and stack:
            if stack[-1] == ch:
                stack.pop()
            if not stack:
                return cleaned[: idx + 1]

    repaired = cleaned
    if in_string:
        repaired += '"'
    repaired = re.sub(r'[,:]\s*$', "", repaired.rstrip())
    if stack and stack[-1] == "}":
        # A dangling key without a value cannot be closed meaningfully.
        repaired = re.sub(r',\s*"[^"]*"\s*$', "", repaired)
    while stack:
        repaired += stack.pop()
    return drop_trailing_commas(repaired)


# ---- Scanners ----


def extract_balanced_segment(text: str, start_idx: int) -> Optional[str]:
    if start_idx >= len(text):
        return None
    open_ch = text[start_idx]
    if open_ch not in "{[":
        return None

    close_for = {"{": "}", "[": "]"}
    stack: List[str] = [close_for[open_ch]]
    in_string = False
    escaped = False
    idx = start_idx + 1

    while idx < len(text):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            idx += 1
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append(close_for[ch])
        elif ch in "}]" and ch == stack[-1]:
            stack.pop()
            if not stack:
                return text[start_idx : idx + 1]
        idx += 1

    return None


def extract_key_value(text: str, key: str) -> Optional[Any]:
    key_pattern = re.compile(
        rf'(?:"{re.escape(key)}"|\'{re.escape(key)}\'|\b{re.escape(key)}\b)\s*[:=]\s*',
        flags=re.IGNORECASE,
    )
    match = key_pattern.search(text)
    if not match:
        return None

    value_start = match.end()
    if value_start >= len(text):
        return None

    ch = text[value_start]
    if ch == '"':
        return _extract_json_string(text, value_start)
    if ch in "{[":
        segment = extract_balanced_segment(text, value_start)
        if not segment:
            return None
        return _safe_json_loads(segment)

    end_idx = value_start
    while end_idx < len(text) and text[end_idx] not in ",}\n":
        end_idx += 1
    token = text[value_start:end_idx].strip()
    if not token:
        return None
    primitive = _safe_json_loads(token.lower()) if token.lower() in {"true", "false", "null"} else None
    if primitive is not None:
        return primitive
    try:
        return float(token) if "." in token else int(token)
    except ValueError:
        return token


# ---- Helpers ----


def _fence_body(text: str) -> Optional[str]:
    match = _JSON_FENCE_RE.search(text) or _ANY_FENCE_RE.search(text)
    if not match:
        return None
    return match.group(1).strip() or None


def _match_heading(line: str) -> Tuple[Optional[str], str]:
    heading = _HEADING_RE.match(line)
    if heading:
        return heading.group(1).strip("*: ").strip(), ""
    bold = _BOLD_HEADING_RE.match(line)
    if bold:
        return bold.group(1).strip(": ").strip(), bold.group(2).strip()
    if _BULLET_RE.match(line):
        return None, ""
    label = _LABEL_HEADING_RE.match(line)
    if label and len(label.group(1).split()) <= 6:
        return label.group(1).strip(), label.group(2).strip()
    return None, ""


def _field_for_header(header: str, response_cls: Type[StageResponse]) -> Optional[str]:
    lowered = header.lower()
    for field_name, labels in response_cls.SECTION_LABELS.items():
        if any(label in lowered for label in labels):
            return field_name
    return None


def _closes_string(text: str, quote_idx: int) -> bool:
    idx = quote_idx + 1
    while idx < len(text) and text[idx] in " \t\r\n":
        idx += 1
    return idx >= len(text) or text[idx] in ",:}]"


def _extract_json_string(text: str, start_idx: int) -> Optional[str]:
    idx = start_idx + 1
    escaped = False
    while idx < len(text):
        ch = text[idx]
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            decoded = _safe_json_loads(text[start_idx : idx + 1])
            return decoded if isinstance(decoded, str) else text[start_idx + 1 : idx]
        idx += 1
    return text[start_idx + 1 :].strip() or None


def _loads_object(candidate: str) -> Optional[Dict[str, Any]]:
    parsed = _safe_json_loads(candidate)
    return parsed if isinstance(parsed, dict) else None


def _safe_json_loads(candidate: str) -> Optional[Any]:
    try:
        return json.loads(candidate)
    except (TypeError, ValueError):
        return None


def _literal_eval_object(candidate: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = ast.literal_eval(candidate)
    except (ValueError, SyntaxError, MemoryError, RecursionError, TypeError):
        return None
    if not isinstance(parsed, dict):
        return None
    # Round-trip to drop non-JSON values such as tuples or sets.
    return _loads_object(json.dumps(parsed, default=str))
