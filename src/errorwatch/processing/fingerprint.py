"""Grouping and sanitizing helpers for raw error occurrences.

Learn: A fingerprint is a SHA-1 over the parts of an error that stay the
same when the same bug fires again: project, error type, normalized file,
line, column and the top stack frames. The message text is deliberately
left out (it often embeds ids), except through its ``XxxError:`` prefix.
"""

import hashlib
import re
from typing import Optional, Sequence

ERROR_TYPE_RE = re.compile(r"^([A-Z][a-zA-Z]*Error):")
CHROME_FRAME_RE = re.compile(r"at\s+(?:(.+?)\s+\()?\s*(.+?):(\d+):(\d+)\)?")
FIREFOX_FRAME_RE = re.compile(r"^(.+?)@(.+?):(\d+):(\d+)")

PII_PATTERNS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}"), "[email]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[ip]"),
    (re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b"), "[card]"),
    (
        re.compile(r"[\"']?password[\"']?\s*[:=]\s*[\"'][^\"']*[\"']", re.IGNORECASE),
        '"password":"[filtered]"',
    ),
    (
        re.compile(
            r"[\"']?(?:token|secret|api_?key|authorization)[\"']?\s*[:=]\s*[\"'][^\"']*[\"']",
            re.IGNORECASE,
        ),
        '"[filtered_key]":"[filtered]"',
    ),
    (re.compile(r"Bearer\s+[A-Za-z0-9._~+/=-]+", re.IGNORECASE), "Bearer [filtered]"),
]


def scrub_pii(text: str) -> str:
    """Replace emails, IPs, card numbers and credentials with placeholders."""
    for pattern, replacement in PII_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def extract_error_type(message: str) -> str:
    """``"TypeError: x is undefined"`` → ``"TypeError"``; otherwise ``"Error"``."""
    match = ERROR_TYPE_RE.match(message)
    return match.group(1) if match else "Error"


def parse_stack_frames(stack: str, max_frames: int = 5) -> list[str]:
    """Reduce V8/Node and Firefox stack lines to ``func:line:col`` frames."""
    frames: list[str] = []
    for line in stack.splitlines():
        if len(frames) >= max_frames:
            break
        match = CHROME_FRAME_RE.search(line) or FIREFOX_FRAME_RE.match(line)
        if match:
            func, _, lineno, col = match.groups()
            frames.append(f"{func or 'anonymous'}:{lineno}:{col}")
    return frames


def normalize_file(file: str) -> str:
    return file.split("?")[0].split("#")[0]


def generate_fingerprint(
    project_id: str,
    message: str,
    file: str,
    line: int,
    stack: str,
    column: Optional[int] = None,
) -> str:
    frames = parse_stack_frames(stack)
    components = [
        project_id,
        extract_error_type(message),
        normalize_file(file),
        str(line),
        str(column) if column is not None else "",
        str(len(frames)),
        "|".join(frames[:3]),
    ]
    return hashlib.sha1("|".join(components).encode()).hexdigest()


def custom_fingerprint(project_id: str, group_key: str) -> str:
    return hashlib.sha1(f"{project_id}|custom|{group_key}".encode()).hexdigest()


def match_fingerprint_rule(
    project_id: str, message: str, rules: Sequence[dict]
) -> Optional[str]:
    """First matching ``{pattern, groupKey}`` rule wins; bad regexes are skipped."""
    for rule in rules:
        try:
            if re.search(rule["pattern"], message):
                return custom_fingerprint(project_id, rule["groupKey"])
        except (re.error, KeyError, TypeError):
            continue
    return None
