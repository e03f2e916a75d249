from __future__ import annotations

import re
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Network, ip_address
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Set, Tuple

from services.nginx_validator import (
    SEVERITY_ERROR,
    TIER_COMPILE,
    Finding,
    validate_config,
)
from services.whitelist_model import WhitelistGroup, WhitelistModel, parse_address


REASON_ADDRESS = "address not in group"
REASON_DESTINATION = "destination not allowed for group"

# Diagnostic deny-reason codes keyed by "<member>:<dest_allowed>".
DENY_REASON_CODES: Dict[str, str] = {
    "0:0": "not_in_group_and_url_not_allowed",
    "0:1": "not_in_group",
    "1:0": "url_not_allowed_for_group",
}
NO_GROUP_REASON_CODE = "not_in_group"

_PCRE_SPECIAL = set("\\.^$|?*+()[]{}")
_NEEDS_QUOTES_RE = re.compile(r"[\s;{}#\"']")
_NGINX_ESCAPE_RE = re.compile(r"\\(?=[\"'\\trn]|\Z)")


@dataclass(frozen=True)
class CompileOptions:
    listen_port: int = 3128
    resolver: str = "8.8.8.8"
    resolver_timeout: str = "5s"
    worker_connections: int = 1024
    access_log: str = "/var/log/nginx/access.log"
    deny_status: int = 403

    # A stored pattern is regex-like (already escaped) when it starts with one
    # of regex_prefixes or contains one of regex_markers. `classify` replaces
    # the whole rule when set.
    regex_prefixes: Tuple[str, ...] = ("~", "^")
    regex_markers: Tuple[str, ...] = (".*",)
    classify: Optional[Callable[[str], bool]] = field(default=None, compare=False)

    def is_regex_like(self, pattern: str) -> bool:
        if self.classify is not None:
            return bool(self.classify(pattern))
        p = pattern or ""
        return p.startswith(tuple(self.regex_prefixes)) or any(m in p for m in self.regex_markers)

    @classmethod
    def from_mapping(cls, data: Optional[Dict[str, Any]]) -> "CompileOptions":
        d = data or {}
        base = cls()

        def as_int(name: str, default: int, lo: int, hi: int) -> int:
            try:
                v = int(d.get(name) if d.get(name) not in (None, "") else default)
            except (TypeError, ValueError):
                v = default
            return max(lo, min(hi, v))

        def as_str(name: str, default: str) -> str:
            v = str(d.get(name) or "").strip()
            return v or default

        return cls(
            listen_port=as_int("listen_port", base.listen_port, 1, 65535),
            resolver=as_str("resolver", base.resolver),
            resolver_timeout=as_str("resolver_timeout", base.resolver_timeout),
            worker_connections=as_int("worker_connections", base.worker_connections, 1, 1048576),
            access_log=as_str("access_log", base.access_log),
            deny_status=as_int("deny_status", base.deny_status, 400, 599),
        )


def pcre_escape(text: str) -> str:
    return "".join("\\" + ch if ch in _PCRE_SPECIAL else ch for ch in text)


def quote_value(value: str) -> str:
    """Quote a directive argument when it contains NGINX syntax characters.

    NGINX unescapes \\" \\' \\\\ \\t \\r \\n in every token, so a backslash that
    would start one of those (or end the value) is doubled; other backslashes
    reach the regex engine unchanged.
    """
    escaped = _NGINX_ESCAPE_RE.sub(r"\\\\", value or "")
    if escaped and not _NEEDS_QUOTES_RE.search(escaped):
        return escaped
    return '"' + escaped.replace('"', '\\"') + '"'


@dataclass(frozen=True)
class DestinationRule:
    source: str
    regex: str
    case_insensitive: bool = False
    compiled: Optional[Pattern[str]] = field(default=None, compare=False, repr=False)

    @property
    def map_key(self) -> str:
        return quote_value(("~*" if self.case_insensitive else "~") + self.regex)

    def matches(self, host: str) -> bool:
        if self.compiled is None:
            return False
        return self.compiled.search(host) is not None


def destination_rule(pattern: str, options: Optional[CompileOptions] = None) -> DestinationRule:
    """Turn a stored URL pattern into a map rule.

    Regex-like patterns are used verbatim (never re-escaped); literal patterns
    are exact hostnames and get escaped exactly once and anchored.
    """
    opts = options or CompileOptions()
    p = (pattern or "").strip()
    case_insensitive = False
    if opts.is_regex_like(p):
        if p.startswith("~*"):
            body = p[2:].lstrip()
            case_insensitive = True
        elif p.startswith("~"):
            body = p[1:].lstrip()
        else:
            body = p
    else:
        body = "^" + pcre_escape(p.lower()) + "$"

    try:
        compiled: Optional[Pattern[str]] = re.compile(body, re.IGNORECASE if case_insensitive else 0)
    except re.error:
        compiled = None
    return DestinationRule(source=p, regex=body, case_insensitive=case_insensitive, compiled=compiled)


@dataclass(frozen=True)
class GroupRuleSet:
    name: str
    description: str
    stem: str
    addresses: Tuple[str, ...]
    networks: Tuple[IPv4Network, ...]
    destinations: Tuple[DestinationRule, ...]

    @property
    def member_var(self) -> str:
        return f"${self.stem}_member"

    @property
    def dest_var(self) -> str:
        return f"${self.stem}_dest_allowed"

    @property
    def reason_var(self) -> str:
        return f"${self.stem}_deny_reason"

    @property
    def check_var(self) -> str:
        return f"${self.stem}_check"

    def is_member(self, address: IPv4Address) -> bool:
        return any(address in net for net in self.networks)

    def destination_allowed(self, host: str) -> bool:
        return any(d.matches(host) for d in self.destinations)

    def deny_reason_code(self, member: bool, dest_allowed: bool) -> str:
        return DENY_REASON_CODES.get(f"{int(member)}:{int(dest_allowed)}", "")


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    group: Optional[str]
    deny_reason_code: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "group": self.group,
            "deny_reason_code": self.deny_reason_code,
        }


def _normalize_host(host: str) -> str:
    h = (host or "").strip().lower().rstrip(".")
    if h.startswith("[") or h.count(":") != 1:
        return h
    name, port = h.rsplit(":", 1)
    return name if port.isdigit() else h


@dataclass(frozen=True)
class CompiledConfig:
    text: str
    valid: bool
    findings: Tuple[Finding, ...]
    rules: Tuple[GroupRuleSet, ...] = field(default_factory=tuple, compare=False)

    def decide(self, address: str, host: str) -> AccessDecision:
        """Evaluate a request the way the emitted directives do.

        Every group is checked independently against the client address; any
        group whose address set and destination set both match allows the
        request. Deny-reason attribution goes to the earliest member group.
        """
        try:
            addr = ip_address((address or "").strip())
        except ValueError:
            return AccessDecision(False, REASON_ADDRESS, None, NO_GROUP_REASON_CODE)
        if not isinstance(addr, IPv4Address):
            return AccessDecision(False, REASON_ADDRESS, None, NO_GROUP_REASON_CODE)

        h = _normalize_host(host)
        attributed: Optional[Tuple[GroupRuleSet, bool, bool]] = None
        allowed_by: Optional[GroupRuleSet] = None
        for rs in self.rules:
            member = rs.is_member(addr)
            if not member:
                continue
            dest_ok = rs.destination_allowed(h)
            if attributed is None:
                attributed = (rs, member, dest_ok)
            if dest_ok and allowed_by is None:
                allowed_by = rs

        if attributed is None:
            return AccessDecision(False, REASON_ADDRESS, None, NO_GROUP_REASON_CODE)
        if allowed_by is None:
            rs, member, dest_ok = attributed
            return AccessDecision(False, REASON_DESTINATION, rs.name, rs.deny_reason_code(member, dest_ok))
        return AccessDecision(True, "", allowed_by.name, "")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "valid": self.valid,
            "findings": [f.to_dict() for f in self.findings],
        }


def _slug(name: str) -> str:
    s = re.sub(r"[^a-z0-9]+", "_", (name or "").lower()).strip("_")
    return s or "group"


def build_rules(model: WhitelistModel, options: Optional[CompileOptions] = None) -> Tuple[List[GroupRuleSet], List[Finding]]:
    opts = options or CompileOptions()
    rules: List[GroupRuleSet] = []
    findings: List[Finding] = []
    used: Set[str] = set()
    for g in model.groups():
        # Distinct names can share a slug ("a b" / "a-b"); suffix in model order.
        base = "wl_" + _slug(g.name)
        stem = base
        k = 2
        while stem in used:
            stem = f"{base}_{k}"
            k += 1
        used.add(stem)
        rules.append(_group_rules(g, stem, opts, findings))
    return rules, findings


def _group_rules(g: WhitelistGroup, stem: str, opts: CompileOptions, findings: List[Finding]) -> GroupRuleSet:
    addresses = tuple(e.value for e in g.addresses)
    networks = tuple(parse_address(a) for a in addresses)
    destinations = []
    for e in g.url_patterns:
        rule = destination_rule(e.value, opts)
        if rule.compiled is None:
            findings.append(
                Finding(
                    SEVERITY_ERROR,
                    "invalid_pattern",
                    TIER_COMPILE,
                    f"Group '{g.name}': URL pattern {e.value!r} is not a valid regular expression",
                )
            )
        destinations.append(rule)
    return GroupRuleSet(
        name=g.name,
        description=g.description,
        stem=stem,
        addresses=addresses,
        networks=networks,
        destinations=tuple(destinations),
    )


def _comment_text(s: str) -> str:
    return re.sub(r"[\r\n]+", " ", s or "").strip()


def render_group_rules(rs: GroupRuleSet) -> List[str]:
    lines = [f"    # group: {_comment_text(rs.name)}"]
    if rs.description:
        lines.append(f"    # description: {_comment_text(rs.description)}")

    lines.append(f"    geo $remote_addr {rs.member_var} {{")
    lines.append("        default 0;")
    for a in rs.addresses:
        lines.append(f"        {a} 1;")
    lines.append("    }")
    lines.append("")

    lines.append(f"    map $host {rs.dest_var} {{")
    lines.append("        default 0;")
    for d in rs.destinations:
        lines.append(f"        {d.map_key} 1;")
    lines.append("    }")
    lines.append("")

    lines.append(f'    map "{rs.member_var}:{rs.dest_var}" {rs.reason_var} {{')
    lines.append('        default "";')
    for key, code in DENY_REASON_CODES.items():
        lines.append(f'        "{key}" "{code}";')
    lines.append("    }")
    lines.append("")
    return lines


def render_decision(rules: Sequence[GroupRuleSet], opts: CompileOptions) -> List[str]:
    lines = [
        "        set $wl_address_ok 0;",
        "        set $wl_allow 0;",
        f'        set $wl_deny_reason "{NO_GROUP_REASON_CODE}";',
        "",
    ]
    for rs in rules:
        lines.append(f"        # checks: {_comment_text(rs.name)}")
        lines.append(f"        if ({rs.member_var} = 1) {{")
        lines.append("            set $wl_address_ok 1;")
        lines.append("        }")
        lines.append(f'        set {rs.check_var} "{rs.member_var}{rs.dest_var}";')
        lines.append(f'        if ({rs.check_var} = "11") {{')
        lines.append("            set $wl_allow 1;")
        lines.append("        }")
        lines.append("")

    if rules:
        # Later assignments win, so walk backwards: the earliest member group
        # ends up owning the logged reason.
        for rs in reversed(rules):
            lines.append(f"        if ({rs.member_var} = 1) {{")
            lines.append(f"            set $wl_deny_reason {rs.reason_var};")
            lines.append("        }")
        lines.append("        if ($wl_allow = 1) {")
        lines.append('            set $wl_deny_reason "";')
        lines.append("        }")
        lines.append("")

    lines.append("        if ($wl_address_ok = 0) {")
    lines.append(f'            return {opts.deny_status} "{REASON_ADDRESS}\\n";')
    lines.append("        }")
    lines.append("        if ($wl_allow = 0) {")
    lines.append(f'            return {opts.deny_status} "{REASON_DESTINATION}\\n";')
    lines.append("        }")
    return lines


def render_config(rules: Sequence[GroupRuleSet], opts: CompileOptions) -> str:
    lines = [
        "# Generated by nginx-whitelist-manager from the whitelist groups.",
        "worker_processes auto;",
        "daemon off;",
        "",
        "events {",
        f"    worker_connections {int(opts.worker_connections)};",
        "}",
        "",
        "http {",
        "    log_format whitelist '$remote_addr - $remote_user [$time_local] \"$request\" '",
        "                         '$status $body_bytes_sent \"$http_referer\" '",
        "                         '\"$http_user_agent\" \"$http_x_forwarded_for\" deny_reason=$wl_deny_reason';",
        f"    access_log {quote_value(opts.access_log)} whitelist;",
        "",
        f"    resolver {opts.resolver};",
        f"    resolver_timeout {opts.resolver_timeout};",
        "",
    ]
    for rs in rules:
        lines.extend(render_group_rules(rs))

    lines.extend(
        [
            "    server {",
            f"        listen {int(opts.listen_port)};",
            "",
        ]
    )
    lines.extend(render_decision(rules, opts))
    lines.extend(
        [
            "",
            "        location / {",
            "            proxy_pass http://$host$request_uri;",
            "            proxy_set_header Host $host;",
            "        }",
            "    }",
            "}",
        ]
    )
    return "\n".join(lines) + "\n"


def compile_config(model: WhitelistModel, options: Optional[CompileOptions] = None) -> CompiledConfig:
    """Render the whitelist model as a complete nginx.conf.

    Pure and deterministic: the same model and options always give the same
    bytes, so re-applying an unchanged model is a no-op diff.
    """
    opts = options or CompileOptions()
    rules, compile_findings = build_rules(model, opts)
    text = render_config(rules, opts)
    validation = validate_config(text, native=False)
    findings = tuple(compile_findings) + validation.findings
    valid = validation.valid and not any(f.severity == SEVERITY_ERROR for f in compile_findings)
    return CompiledConfig(text=text, valid=valid, findings=findings, rules=tuple(rules))
