"""
AgentGroupChat Output Filter

Turns the free-form terminal text an agent produced during one turn into the
reply that gets posted to the group, and recognizes the pass signal.

Terminal output typically echoes the injected prompt, interleaves spinner and
status lines, and draws box chrome around input areas. Detection is line based
and conservative: fenced code blocks are never touched.
"""
import enum
import hashlib
import re
from typing import Optional

from groupchat.prompt_config import DEFAULT_PASS_KEYWORD

ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")

# Quote / bullet / prompt markers a terminal UI puts in front of a line
LEADING_MARKERS = re.compile(r"^[\s>\-*•●⏺◆›❯│┃]+")

WORKING_PATTERN = re.compile(r"working\s*\(\s*\d+\s*s", re.IGNORECASE)
INTERRUPT_PATTERN = re.compile(r"esc to (?:interrupt|cancel)", re.IGNORECASE)

SPINNER_GLYPHS = set("✻✶✳✢✽✺·◐◓◑◒◴◷◶◵◜◝◞◟")

FENCE_PREFIXES = ("```", "~~~")

_BRACKETS = {"[": "]", "(": ")", "<": ">", "{": "}"}

# Prompt-echo lines shorter than this are too ambiguous to anchor on
_MIN_ANCHOR_LEN = 12
_ANCHOR_PREFIX_LEN = 40


class OutputKind(str, enum.Enum):
    EMPTY = "empty"
    PASS = "pass"
    REPLY = "reply"


# ─────────────────────────────────────────────
# Pass protocol
# ─────────────────────────────────────────────

def _strip_brackets(text: str) -> str:
    text = text.strip()
    if len(text) >= 2 and _BRACKETS.get(text[0]) == text[-1]:
        return text[1:-1].strip()
    return text


def is_pass_signal(text: str, pass_keyword: str = DEFAULT_PASS_KEYWORD) -> bool:
    """True when `text` (one line) is the pass keyword, with or without brackets, any case."""
    candidate = LEADING_MARKERS.sub("", text or "").strip()
    keyword = (pass_keyword or "").strip()
    if not candidate or not keyword:
        return False
    bare_keyword = _strip_brackets(keyword).casefold()
    folded = candidate.casefold()
    if folded == keyword.casefold() or folded == bare_keyword:
        return True
    return bool(bare_keyword) and _strip_brackets(candidate).casefold() == bare_keyword


def last_non_empty_line(text: str) -> Optional[str]:
    for line in reversed((text or "").splitlines()):
        if line.strip():
            return line
    return None


def classify_output(cleaned: str, pass_keyword: str = DEFAULT_PASS_KEYWORD) -> OutputKind:
    if not cleaned or not cleaned.strip():
        return OutputKind.EMPTY
    if is_pass_signal(cleaned.strip(), pass_keyword):
        return OutputKind.PASS
    last = last_non_empty_line(cleaned)
    if last is not None and is_pass_signal(last, pass_keyword):
        return OutputKind.PASS
    return OutputKind.REPLY


def content_fingerprint(text: str) -> str:
    """Whitespace-normalized, case-folded digest used to drop duplicate posts."""
    normalized = " ".join(text.split()).casefold()
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()


# ─────────────────────────────────────────────
# Line classification
# ─────────────────────────────────────────────

def _is_box_char(ch: str) -> bool:
    code = ord(ch)
    # Box Drawing + Block Elements
    return 0x2500 <= code <= 0x259F


def is_chrome_line(line: str) -> bool:
    stripped = line.strip()
    return bool(stripped) and all(_is_box_char(ch) or ch.isspace() for ch in stripped)


def _is_spinner_char(ch: str) -> bool:
    # Braille patterns are used by most terminal spinners
    return 0x2800 <= ord(ch) <= 0x28FF or ch in SPINNER_GLYPHS


def is_status_line(line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if WORKING_PATTERN.search(stripped) or INTERRUPT_PATTERN.search(stripped):
        return True
    return all(_is_spinner_char(ch) or ch.isspace() for ch in stripped)


def _normalize_line(line: str) -> str:
    return " ".join(LEADING_MARKERS.sub("", line).split())


def _fence_mask(lines: list[str]) -> list[bool]:
    """mask[i] is True when line i is a fence delimiter or lies inside a fence."""
    mask = []
    inside = False
    for line in lines:
        if line.strip().startswith(FENCE_PREFIXES):
            mask.append(True)
            inside = not inside
            continue
        mask.append(inside)
    return mask


# ─────────────────────────────────────────────
# Prompt echo excision
# ─────────────────────────────────────────────

def _matches_head(line: str, head: str) -> bool:
    if not line:
        return False
    prefix = head[:_ANCHOR_PREFIX_LEN]
    if line.startswith(prefix):
        return True
    # wrapped first line: the terminal line is a leading piece of the payload head
    return len(line) >= min(len(head), _MIN_ANCHOR_LEN) and head.startswith(line)


def _matches_tail(line: str, tail: str) -> bool:
    if not line:
        return False
    if line == tail or line.endswith(tail[-_ANCHOR_PREFIX_LEN:]):
        return True
    # wrapped last line: the terminal line is a trailing piece of the payload tail
    return len(line) >= min(len(tail), _MIN_ANCHOR_LEN) and tail.endswith(line)


def _excise_prompt_echo(lines: list[str], payload_lines: list[str], max_span: int) -> list[str]:
    if not payload_lines:
        return lines
    head, tail = payload_lines[0], payload_lines[-1]
    result = list(lines)
    start = 0
    while start < len(result):
        mask = _fence_mask(result)
        found = False
        for i in range(start, len(result)):
            if mask[i] or not _matches_head(_normalize_line(result[i]), head):
                continue
            stop = min(len(result), i + max_span)
            for j in range(i, stop):
                if mask[j]:
                    # fenced text is never part of an echo
                    break
                if _matches_tail(_normalize_line(result[j]), tail):
                    del result[i:j + 1]
                    start = i
                    found = True
                    break
            if found:
                break
        if not found:
            break
    return result


def strip_terminal_codes(raw: str) -> str:
    text = ANSI_ESCAPE.sub("", raw or "")
    text = text.replace("\r\n", "\n")
    # a bare carriage return means the line was redrawn; keep what was drawn last
    return "\n".join(line.rsplit("\r", 1)[-1] for line in text.split("\n"))


def clean_output(
    raw: str,
    payload: str = "",
    pass_keyword: str = DEFAULT_PASS_KEYWORD,
    max_echo_span: int = 200,
) -> str:
    """Extract the reply from raw turn output.

    Returns the canonical pass keyword when the last non-empty line already is
    the pass signal; whatever preceded it is tool chatter.
    """
    text = strip_terminal_codes(raw)
    last = last_non_empty_line(text)
    if last is not None and is_pass_signal(last, pass_keyword):
        return pass_keyword

    payload_lines = [n for n in (_normalize_line(l) for l in (payload or "").splitlines()) if n]
    lines = _excise_prompt_echo(text.split("\n"), payload_lines, max_echo_span)
    echoes = set(payload_lines)

    kept: list[str] = []
    inside_fence = False
    for line in lines:
        stripped = line.strip()
        if stripped.startswith(FENCE_PREFIXES):
            inside_fence = not inside_fence
            kept.append(line)
            continue
        if inside_fence:
            kept.append(line)
            continue
        if is_chrome_line(line) or is_status_line(line):
            continue
        if stripped and _normalize_line(line) in echoes:
            continue
        kept.append(line.rstrip())

    while kept and not kept[0].strip():
        kept.pop(0)
    while kept and not kept[-1].strip():
        kept.pop()
    return "\n".join(kept)
