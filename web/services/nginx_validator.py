from __future__ import annotations

import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from subprocess import run
from typing import Any, Dict, List, Optional, Tuple


logger = logging.getLogger(__name__)


SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"

TIER_STRUCTURAL = "structural"
TIER_SEMANTIC = "semantic"
TIER_COMPILE = "compile"
TIER_NATIVE = "native"

# Markers written by the compiler and read back here.
GROUP_HEADER_RE = re.compile(r"^#\s*group:\s*(.+?)\s*$")
MEMBER_SUFFIX = "_member"
DEST_SUFFIX = "_dest_allowed"

# Parameters inside geo/map blocks that are not classification entries.
_BLOCK_PARAMS = {"default", "hostnames", "include", "volatile", "ranges", "proxy", "proxy_recursive", "delete"}


@dataclass(frozen=True)
class Finding:
    severity: str
    code: str
    tier: str
    message: str
    line: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "severity": self.severity,
            "code": self.code,
            "tier": self.tier,
            "message": self.message,
            "line": self.line,
        }


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    findings: Tuple[Finding, ...] = field(default_factory=tuple)

    @property
    def errors(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == SEVERITY_ERROR]

    @property
    def warnings(self) -> List[Finding]:
        return [f for f in self.findings if f.severity == SEVERITY_WARNING]

    def summary(self) -> str:
        errs = self.errors
        if errs:
            return "; ".join(f"[{f.tier}] {f.message}" for f in errs)
        if self.findings:
            return f"Configuration appears valid ({len(self.findings)} warning(s))"
        return "Configuration appears valid"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "summary": self.summary(),
            "findings": [f.to_dict() for f in self.findings],
        }


@dataclass(frozen=True)
class _Token:
    kind: str  # word | quoted | open | close | semi | comment
    text: str
    line: int


class _ScanError(Exception):
    def __init__(self, finding: Finding):
        super().__init__(finding.message)
        self.finding = finding


def _scan(text: str) -> List[_Token]:
    """Split directive text into tokens.

    Braces inside quoted values and comments do not count. Raises _ScanError on
    the first unterminated quoted value.
    """
    tokens: List[_Token] = []
    s = text or ""
    n = len(s)
    i = 0
    line = 1
    while i < n:
        ch = s[i]
        if ch == "\n":
            line += 1
            i += 1
            continue
        if ch.isspace():
            i += 1
            continue
        if ch == "#":
            end = s.find("\n", i)
            if end < 0:
                end = n
            tokens.append(_Token("comment", s[i:end], line))
            i = end
            continue
        if ch in ("'", '"'):
            start_line = line
            j = i + 1
            while j < n and s[j] != ch:
                if s[j] == "\\":
                    j += 1
                if j < n and s[j] == "\n":
                    line += 1
                j += 1
            if j >= n:
                raise _ScanError(
                    Finding(
                        SEVERITY_ERROR,
                        "unterminated_string",
                        TIER_STRUCTURAL,
                        f"Unterminated quoted value starting at line {start_line}",
                        start_line,
                    )
                )
            tokens.append(_Token("quoted", s[i + 1:j], start_line))
            i = j + 1
            continue
        if ch == "{":
            tokens.append(_Token("open", ch, line))
            i += 1
            continue
        if ch == "}":
            tokens.append(_Token("close", ch, line))
            i += 1
            continue
        if ch == ";":
            tokens.append(_Token("semi", ch, line))
            i += 1
            continue

        # Quotes only open a quoted value at the start of a token; inside a
        # word they are literal, and a backslash escapes the next character.
        word_line = line
        j = i
        while j < n and not s[j].isspace() and s[j] not in "{};":
            if s[j] == "\\" and j + 1 < n:
                if s[j + 1] == "\n":
                    line += 1
                j += 2
                continue
            if s[j] == "$" and j + 1 < n and s[j + 1] == "{":
                close = s.find("}", j)
                j = n if close < 0 else close + 1
                continue
            j += 1
        tokens.append(_Token("word", s[i:j], word_line))
        i = j
    return tokens


def _check_structure(tokens: List[_Token]) -> Optional[Finding]:
    depth = 0
    open_lines: List[int] = []
    for t in tokens:
        if t.kind == "open":
            depth += 1
            open_lines.append(t.line)
        elif t.kind == "close":
            depth -= 1
            if depth < 0:
                return Finding(
                    SEVERITY_ERROR,
                    "unbalanced",
                    TIER_STRUCTURAL,
                    f"Unexpected '}}' at line {t.line} with no open block",
                    t.line,
                )
            open_lines.pop()
    if depth != 0:
        return Finding(
            SEVERITY_ERROR,
            "unbalanced",
            TIER_STRUCTURAL,
            f"Missing {depth} closing brace(s); block opened at line {open_lines[-1]} is never closed",
            open_lines[-1],
        )
    return None


@dataclass
class _Block:
    directive: str
    args: List[str]
    line: int
    group: Optional[str]
    entries: int = 0


def _collect_blocks(tokens: List[_Token]) -> List[_Block]:
    # Flat walk: remember the last "# group:" header, and count the entry
    # statements of every geo/map block. Nested blocks are not expected there.
    blocks: List[_Block] = []
    current_group: Optional[str] = None
    stmt: List[_Token] = []
    inside: Optional[_Block] = None
    for t in tokens:
        if t.kind == "comment":
            m = GROUP_HEADER_RE.match(t.text)
            if m and inside is None:
                current_group = m.group(1)
            continue
        if t.kind in ("word", "quoted"):
            stmt.append(t)
            continue
        if t.kind == "open":
            if inside is None and stmt and stmt[0].text in ("geo", "map"):
                inside = _Block(
                    directive=stmt[0].text,
                    args=[x.text for x in stmt[1:]],
                    line=stmt[0].line,
                    group=current_group,
                )
            stmt = []
            continue
        if t.kind == "semi":
            if inside is not None and stmt and stmt[0].text not in _BLOCK_PARAMS:
                inside.entries += 1
            stmt = []
            continue
        if t.kind == "close":
            if inside is not None:
                blocks.append(inside)
                inside = None
            stmt = []
    return blocks


def _stem(var: str, suffix: str) -> Optional[str]:
    v = var.lstrip("$")
    if v.endswith(suffix):
        return v[: -len(suffix)]
    return None


def _semantic_findings(tokens: List[_Token]) -> List[Finding]:
    findings: List[Finding] = []

    seen_names: Dict[str, int] = {}
    for t in tokens:
        if t.kind != "comment":
            continue
        m = GROUP_HEADER_RE.match(t.text)
        if not m:
            continue
        name = m.group(1)
        if name in seen_names:
            findings.append(
                Finding(
                    SEVERITY_WARNING,
                    "duplicate_group_name",
                    TIER_SEMANTIC,
                    f"Group name '{name}' is defined more than once (first at line {seen_names[name]})",
                    t.line,
                )
            )
        else:
            seen_names[name] = t.line

    seen_vars: Dict[str, int] = {}
    for b in _collect_blocks(tokens):
        if not b.args:
            continue
        target = b.args[-1]
        if target in seen_vars:
            findings.append(
                Finding(
                    SEVERITY_WARNING,
                    "duplicate_group_variable",
                    TIER_SEMANTIC,
                    f"Variable {target} is defined by more than one {b.directive} block (first at line {seen_vars[target]})",
                    b.line,
                )
            )
        else:
            seen_vars[target] = b.line

        if b.directive == "geo":
            stem = _stem(target, MEMBER_SUFFIX)
            if stem is not None and b.entries == 0:
                label = b.group or stem
                findings.append(
                    Finding(
                        SEVERITY_WARNING,
                        "empty_address_set",
                        TIER_SEMANTIC,
                        f"Group '{label}' has no source addresses; every request is denied for it",
                        b.line,
                    )
                )
        elif b.directive == "map" and len(b.args) >= 2 and b.args[0] == "$host":
            stem = _stem(target, DEST_SUFFIX)
            if stem is not None and b.entries == 0:
                label = b.group or stem
                findings.append(
                    Finding(
                        SEVERITY_WARNING,
                        "empty_url_set",
                        TIER_SEMANTIC,
                        f"Group '{label}' has no allowed URL patterns; every request is denied for it",
                        b.line,
                    )
                )
    return findings


def native_validation_enabled() -> bool:
    return (os.environ.get("NGINX_NATIVE_VALIDATE") or "").strip().lower() in ("1", "true", "yes", "on")


def native_check(config_text: str, *, nginx_bin: Optional[str] = None, timeout: float = 10) -> List[Finding]:
    """Validate by writing to a temp file and invoking `nginx -t`."""
    binary = (nginx_bin or os.environ.get("NGINX_BIN") or "nginx").strip()
    tmp_path = ""
    try:
        with tempfile.NamedTemporaryFile(mode="w", encoding="utf-8", delete=False, prefix="nginx-conf-", suffix=".conf") as f:
            tmp_path = f.name
            f.write(config_text)

        p = run([binary, "-t", "-q", "-c", tmp_path], capture_output=True, text=True, timeout=timeout)
        if p.returncode == 0:
            return []
        combined = ((p.stdout or "") + ("\n" if p.stdout and p.stderr else "") + (p.stderr or "")).strip()
        return [Finding(SEVERITY_ERROR, "native_rejected", TIER_NATIVE, combined or "nginx -t failed")]
    except FileNotFoundError:
        return [Finding(SEVERITY_WARNING, "native_unavailable", TIER_NATIVE, f"{binary} binary not found; native check skipped")]
    except Exception as e:
        logger.exception("nginx native validation failed")
        return [Finding(SEVERITY_WARNING, "native_unavailable", TIER_NATIVE, f"Native check could not run: {e}")]
    finally:
        if tmp_path:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def validate_config(text: str, *, native: Optional[bool] = None) -> ValidationResult:
    """Two-tier check of directive text.

    Structural errors (unbalanced braces, unterminated quotes) make the result
    invalid and block saving. Semantic findings are warnings only: a hand-edited
    config that is structurally sound stays savable.
    """
    try:
        tokens = _scan(text)
    except _ScanError as e:
        return ValidationResult(valid=False, findings=(e.finding,))

    structural = _check_structure(tokens)
    if structural is not None:
        return ValidationResult(valid=False, findings=(structural,))

    findings = _semantic_findings(tokens)

    if native if native is not None else native_validation_enabled():
        findings.extend(native_check(text))

    valid = not any(f.severity == SEVERITY_ERROR for f in findings)
    return ValidationResult(valid=valid, findings=tuple(findings))
