#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Any, Dict, List, Optional


def _emit(data: Dict[str, Any], as_json: bool, text: str) -> None:
    if as_json:
        print(json.dumps(data, indent=2, sort_keys=True))
    else:
        print(text)


def _read_input(path: str) -> str:
    if path == "-":
        return sys.stdin.read()
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Compile, validate and reconcile the NGINX forward-proxy whitelist")
    ap.add_argument("--json", action="store_true", help="Print machine-readable JSON")
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("compile", help="Compile the stored whitelist into an NGINX config")
    p.add_argument("--db", default=None, help="Whitelist SQLite DB (default: WHITELIST_DB or DATA_DIR/whitelist.db)")
    p.add_argument("--out", default=None, help="Write the config here instead of stdout")

    p = sub.add_parser("validate", help="Validate an NGINX config file ('-' for stdin)")
    p.add_argument("file")
    p.add_argument("--native", action="store_true", help="Also run `nginx -t` if available")

    p = sub.add_parser("deploy", help="Compile the stored whitelist and save it to the proxy config path")
    p.add_argument("--db", default=None)
    p.add_argument("--path", default=None, help="Config path (default: from settings)")

    for name, help_text in (
        ("check-file", "Check the config file's mode and owner"),
        ("fix-file", "Set the config file to 644 nginx:nginx and re-check"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--path", default=None, help="Config path (default: from settings)")

    for name, help_text in (
        ("check-process", "Check that the proxy process is running"),
        ("restart", "Restart the proxy process and re-check"),
    ):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--name", default=None, help="Container or program name (default: from settings)")
        p.add_argument("--backend", default=None, choices=("docker", "supervisor"))

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ns = _build_parser().parse_args(argv)

    # This script lives in web/tools; the services package is in web/.
    here = os.path.abspath(os.path.dirname(__file__))
    app_root = os.path.abspath(os.path.join(here, ".."))
    if app_root not in sys.path:
        sys.path.insert(0, app_root)

    from services.gateways import LocalFileGateway, make_process_gateway
    from services.nginx_compiler import compile_config
    from services.nginx_validator import validate_config
    from services.reconcile import ReconciliationEngine
    from services.settings_store import get_settings_store
    from services.whitelist_store import WhitelistStore

    settings = get_settings_store()
    proxy = settings.get_proxy_settings()

    if ns.command == "validate":
        try:
            text = _read_input(ns.file)
        except OSError as e:
            print(f"[whitelist_ctl] cannot read {ns.file}: {e}", file=sys.stderr)
            return 2
        result = validate_config(text, native=True if ns.native else None)
        lines = [result.summary()] + [
            f"{f.severity}: {f.code} ({f.tier})" + (f" line {f.line}" if f.line else "") + f": {f.message}"
            for f in result.findings
        ]
        _emit(result.to_dict(), ns.json, "\n".join(lines))
        return 0 if result.valid else 1

    if ns.command in ("compile", "deploy"):
        compiled = compile_config(WhitelistStore(db_path=ns.db).model(), settings.get_compile_options())
        for f in compiled.findings:
            print(f"[whitelist_ctl] {f.severity}: {f.code}: {f.message}", file=sys.stderr)
        if not compiled.valid:
            return 1
        if ns.command == "compile":
            if ns.out:
                with open(ns.out, "w", encoding="utf-8") as fh:
                    fh.write(compiled.text)
            elif ns.json:
                _emit(compiled.to_dict(), True, "")
            else:
                sys.stdout.write(compiled.text)
            return 0

    # The docker client is created lazily, so file commands never contact it.
    engine = ReconciliationEngine(LocalFileGateway(), make_process_gateway(getattr(ns, "backend", None)))

    if ns.command in ("check-process", "restart"):
        name = ns.name or proxy.nginx_container_name
        if ns.command == "restart":
            res = engine.remediate_process(name)
            _emit(res.to_dict(), ns.json, res.error or res.status.details)
            return 0 if res.ok else 1
        status = engine.check_process_compliance(name)
        text = status.details + (f" (guidance: {status.guidance})" if status.guidance else "")
        _emit(status.to_dict(), ns.json, text)
        return 0 if status.is_compliant else 1

    path = ns.path or proxy.nginx_config_path

    if ns.command == "deploy":
        saved = engine.save(path, compiled.text)
        _emit(saved.to_dict(), ns.json, saved.error or f"Saved {path}")
        return 0 if saved.ok else 1

    if ns.command == "fix-file":
        res = engine.remediate_file(path)
        _emit(res.to_dict(), ns.json, res.error or res.status.details)
        return 0 if res.ok else 1

    status = engine.check_file_compliance(path)
    _emit(status.to_dict(), ns.json, f"{path}: {status.details}")
    return 0 if status.is_compliant else 1


if __name__ == "__main__":
    raise SystemExit(main())
