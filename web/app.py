from flask import Flask, request, jsonify, abort, session
from services.auth_store import get_auth_store
from services.audit_store import get_audit_store
from services.background_guard import acquire_background_lock
from services.errors import GroupNotFound, ModelError, public_error_message
from services.gateways import LocalFileGateway, make_process_gateway
from services.housekeeping import start_housekeeping
from services.nginx_compiler import compile_config
from services.nginx_validator import validate_config
from services.reconcile import ReconciliationEngine
from services.settings_store import get_settings_store
from services.whitelist_store import get_whitelist_store

import logging
import os
import secrets
import threading
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

app = Flask(__name__)
logger = logging.getLogger(__name__)

try:
    app.config.setdefault(
        'MAX_CONTENT_LENGTH',
        int((os.environ.get('MAX_CONTENT_LENGTH') or str(2 * 1024 * 1024)).strip()),
    )
except ValueError:
    app.config.setdefault('MAX_CONTENT_LENGTH', 2 * 1024 * 1024)

# Persist the session secret so logins survive restarts.
_auth_store = get_auth_store()
_env_secret = (os.environ.get('FLASK_SECRET_KEY') or os.environ.get('SECRET_KEY') or '').strip()
if _env_secret:
    app.secret_key = _env_secret
else:
    try:
        app.secret_key = _auth_store.get_or_create_secret_key()
    except OSError:
        logger.exception("Cannot persist Flask secret key; sessions reset on restart")
        app.secret_key = secrets.token_urlsafe(48)

app.config.setdefault('SESSION_COOKIE_HTTPONLY', True)
app.config.setdefault('SESSION_COOKIE_SAMESITE', 'Lax')
if (os.environ.get('SESSION_COOKIE_SECURE') or '').strip() in ('1', 'true', 'True', 'yes', 'on'):
    app.config['SESSION_COOKIE_SECURE'] = True

try:
    _auth_store.ensure_default_admin()
except Exception:
    logger.exception("Failed to ensure a default admin login")


_engine: Optional[ReconciliationEngine] = None
_engine_lock = threading.Lock()


def get_engine() -> ReconciliationEngine:
    global _engine
    with _engine_lock:
        if _engine is None:
            _engine = ReconciliationEngine(LocalFileGateway(), make_process_gateway())
        return _engine


def _current_user() -> str:
    u = session.get('user')
    return u if isinstance(u, str) else ''


def _local_path(target: str) -> str:
    """Return target only if it is an app-local path, else an empty string."""
    t = (target or '').strip()
    if not t.startswith('/') or t.startswith('//') or '\\' in t:
        return ''
    parts = urlsplit(t)
    return '' if (parts.scheme or parts.netloc) else t


def _csrf_disabled() -> bool:
    return (os.environ.get('DISABLE_CSRF') or '').strip().lower() in ('1', 'true', 'yes', 'on')


def _ensure_csrf_token() -> str:
    tok = session.get('_csrf_token')
    if not tok or not isinstance(tok, str):
        tok = secrets.token_urlsafe(32)
        session['_csrf_token'] = tok
    return tok


@app.before_request
def _csrf_guard():
    if _csrf_disabled():
        return None
    if request.method not in ('POST', 'PUT', 'PATCH', 'DELETE'):
        return None

    sent = (request.headers.get('X-CSRF-Token') or '').strip()
    if not sent:
        sent = (request.form.get('csrf_token') or '').strip()

    expected = _ensure_csrf_token()
    if not sent or not secrets.compare_digest(sent, expected):
        abort(403)
    return None


@app.before_request
def _require_login_guard():
    if request.endpoint in (None, 'static', 'health', 'login', 'logout', 'api_session'):
        return None
    if _current_user():
        return None
    return jsonify({"ok": False, "error": "Login required."}), 401


@app.after_request
def _security_headers(resp):
    resp.headers.setdefault('X-Content-Type-Options', 'nosniff')
    resp.headers.setdefault('X-Frame-Options', 'DENY')
    resp.headers.setdefault('Referrer-Policy', 'strict-origin-when-cross-origin')
    resp.headers.setdefault('Permissions-Policy', 'geolocation=(), microphone=(), camera=()')
    resp.headers.setdefault('Cache-Control', 'no-store')
    return resp


@app.errorhandler(GroupNotFound)
def _group_not_found(e):
    return jsonify({"ok": False, "error": public_error_message(e)}), 404


@app.errorhandler(ModelError)
def _model_error(e):
    return jsonify({"ok": False, "error": public_error_message(e)}), 400


@app.errorhandler(403)
def _forbidden(e):
    return jsonify({"ok": False, "error": "Forbidden."}), 403


def _body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _audit(kind: str, ok: bool, *, target: Optional[str] = None, detail: Optional[str] = None, config_text: Optional[str] = None) -> None:
    try:
        get_audit_store().record(
            kind,
            ok,
            target=target,
            username=_current_user() or None,
            remote_addr=request.remote_addr,
            detail=detail,
            config_text=config_text,
        )
    except Exception:
        logger.exception("Failed to record audit event %s", kind)


def _mutate(kind: str, fn: Callable[[Any], Any]) -> Any:
    """Apply `fn` to the shared model and persist it, under the store lock."""
    store = get_whitelist_store()
    with store.lock:
        model = store.model()
        try:
            result = fn(model)
            store.save(model)
        except ModelError:
            raise
        except Exception:
            # Drop the half-applied in-memory change.
            store.reload()
            raise
    _audit(kind, True, detail=str(result) if result is not None else None)
    return result


def _compile():
    return compile_config(get_whitelist_store().model(), get_settings_store().get_compile_options())


# Session


@app.route('/health', methods=['GET'])
def health():
    return jsonify({"ok": True}), 200


@app.route('/api/session', methods=['GET'])
def api_session():
    return jsonify({"user": _current_user() or None, "csrf_token": _ensure_csrf_token()})


@app.route('/login', methods=['POST'])
def login():
    data = _body()
    username = (data.get('username') or '').strip()
    password = data.get('password') or ''
    if _auth_store.verify_user(username, password):
        session['user'] = username
        logger.info("Login for %s from %s", username, request.remote_addr)
        return jsonify({"ok": True, "user": username, "next": _local_path(data.get('next') or '') or '/'})
    logger.warning("Failed login for %r from %s", username, request.remote_addr)
    return jsonify({"ok": False, "error": "Invalid username or password."}), 401


@app.route('/logout', methods=['POST'])
def logout():
    session.pop('user', None)
    return jsonify({"ok": True})


@app.route('/api/account/password', methods=['POST'])
def api_account_password():
    data = _body()
    user = _current_user()
    if not _auth_store.verify_user(user, data.get('current_password') or ''):
        return jsonify({"ok": False, "error": "Current password is incorrect."}), 400
    try:
        _auth_store.set_password(user, data.get('new_password') or '')
    except ValueError as e:
        return jsonify({"ok": False, "error": public_error_message(e)}), 400
    _audit('password_change', True, target=user)
    return jsonify({"ok": True})


# Whitelist groups


@app.route('/api/groups', methods=['GET', 'POST'])
def api_groups():
    if request.method == 'POST':
        data = _body()
        gid = _mutate('group_add', lambda m: m.add_group(data.get('name') or '', data.get('description') or ''))
        return jsonify({"ok": True, "group": get_whitelist_store().model().get_group(gid).to_dict()}), 201
    return jsonify(get_whitelist_store().model().to_dict())


@app.route('/api/groups/<group_id>', methods=['PATCH', 'DELETE'])
def api_group(group_id: str):
    if request.method == 'DELETE':
        _mutate('group_remove', lambda m: m.remove_group(group_id))
        return jsonify({"ok": True})

    data = _body()

    def rename(m):
        g = m.get_group(group_id)
        name = data.get('name')
        m.rename_group(group_id, g.name if name is None else name, data.get('description'))

    _mutate('group_update', rename)
    return jsonify({"ok": True, "group": get_whitelist_store().model().get_group(group_id).to_dict()})


@app.route('/api/groups/<group_id>/addresses', methods=['POST'])
def api_group_add_address(group_id: str):
    value = str(_body().get('value') or '')
    eid = _mutate('address_add', lambda m: m.add_address(group_id, value))
    return jsonify({"ok": True, "id": eid}), 201


@app.route('/api/groups/<group_id>/addresses/<entry_id>', methods=['DELETE'])
def api_group_remove_address(group_id: str, entry_id: str):
    _mutate('address_remove', lambda m: m.remove_address(group_id, entry_id))
    return jsonify({"ok": True})


@app.route('/api/groups/<group_id>/urls', methods=['POST'])
def api_group_add_url(group_id: str):
    value = str(_body().get('value') or '')
    eid = _mutate('url_add', lambda m: m.add_url_pattern(group_id, value))
    return jsonify({"ok": True, "id": eid}), 201


@app.route('/api/groups/<group_id>/urls/<entry_id>', methods=['DELETE'])
def api_group_remove_url(group_id: str, entry_id: str):
    _mutate('url_remove', lambda m: m.remove_url_pattern(group_id, entry_id))
    return jsonify({"ok": True})


# Configuration


@app.route('/api/config/compiled', methods=['GET'])
def api_config_compiled():
    compiled = _compile()
    if (request.args.get('format') or '').strip().lower() == 'text':
        return app.response_class(compiled.text, mimetype='text/plain; charset=utf-8')
    return jsonify(compiled.to_dict())


@app.route('/api/config/validate', methods=['POST'])
def api_config_validate():
    data = _body()
    text = data.get('text')
    if text is None:
        text = _compile().text
    result = validate_config(str(text))
    _audit('config_validate', result.valid, detail=result.summary(), config_text=str(text))
    return jsonify(result.to_dict())


@app.route('/api/config/test', methods=['POST'])
def api_config_test():
    data = _body()
    decision = _compile().decide(str(data.get('address') or ''), str(data.get('host') or ''))
    return jsonify(decision.to_dict())


@app.route('/api/config', methods=['GET'])
def api_config():
    path = get_settings_store().get_proxy_settings().nginx_config_path
    loaded = get_engine().load(path)
    last_save = get_audit_store().latest_config_save()
    if not loaded.ok:
        return jsonify({"ok": False, "path": path, "error": loaded.error, "last_save": last_save}), 404
    return jsonify({"ok": True, "path": path, "text": loaded.text, "last_save": last_save})


@app.route('/api/config/save', methods=['POST'])
def api_config_save():
    """Save posted text, or the compiled whitelist when no text is posted."""
    data = _body()
    text = data.get('text')
    if text is None:
        compiled = _compile()
        if not compiled.valid:
            return jsonify({"ok": False, "error": "Compiled configuration is invalid.", "validation": {
                "valid": False, "findings": [f.to_dict() for f in compiled.findings]}}), 400
        text = compiled.text

    path = get_settings_store().get_proxy_settings().nginx_config_path
    result = get_engine().save(path, str(text))
    _audit('config_save', result.ok, target=path, detail=result.error or result.validation.summary(), config_text=str(text))
    return jsonify(result.to_dict()), (200 if result.ok else 400)


# Settings


@app.route('/api/settings', methods=['GET', 'POST'])
def api_settings():
    store = get_settings_store()
    if request.method == 'POST':
        data = _body()
        before = store.get_proxy_settings()
        try:
            proxy = store.set_proxy_settings(
                nginx_config_path=data.get('nginx_config_path'),
                nginx_container_name=data.get('nginx_container_name'),
            )
            if isinstance(data.get('compile'), dict):
                store.set_compile_options(data['compile'])
        except ValueError as e:
            return jsonify({"ok": False, "error": public_error_message(e)}), 400

        # A changed identity starts from Unchecked; the replaced one is dropped.
        engine = get_engine()
        if proxy.nginx_config_path != before.nginx_config_path:
            engine.reset_file(before.nginx_config_path, forget=True)
            engine.reset_file(proxy.nginx_config_path)
        if proxy.nginx_container_name != before.nginx_container_name:
            engine.reset_process(before.nginx_container_name, forget=True)
            engine.reset_process(proxy.nginx_container_name)
        _audit('settings_update', True, detail=f"{proxy.nginx_config_path} {proxy.nginx_container_name}")

    opts = store.get_compile_options()
    return jsonify({
        "ok": True,
        "proxy": store.get_proxy_settings().to_dict(),
        "compile": {
            "listen_port": opts.listen_port,
            "resolver": opts.resolver,
            "resolver_timeout": opts.resolver_timeout,
            "worker_connections": opts.worker_connections,
            "access_log": opts.access_log,
            "deny_status": opts.deny_status,
        },
    })


@app.route('/api/auth-settings', methods=['GET', 'POST'])
def api_auth_settings():
    store = get_settings_store()
    if request.method == 'POST':
        try:
            auth = store.set_auth_settings(_body())
        except ValueError as e:
            return jsonify({"ok": False, "error": public_error_message(e)}), 400
        _audit('auth_settings_update', True)
        return jsonify({"ok": True, **auth.to_dict()})
    return jsonify({"ok": True, **store.get_auth_settings().to_dict()})


# Status


@app.route('/api/status/file', methods=['GET'])
def api_status_file():
    path = get_settings_store().get_proxy_settings().nginx_config_path
    engine = get_engine()
    if (request.args.get('cached') or '') == '1':
        return jsonify(engine.file_status(path).to_dict())
    return jsonify(engine.check_file_compliance(path).to_dict())


@app.route('/api/status/file/remediate', methods=['POST'])
def api_status_file_remediate():
    path = get_settings_store().get_proxy_settings().nginx_config_path
    result = get_engine().remediate_file(path)
    _audit('file_remediate', result.ok, target=path, detail=result.error or result.status.details)
    return jsonify(result.to_dict())


@app.route('/api/status/process', methods=['GET'])
def api_status_process():
    name = get_settings_store().get_proxy_settings().nginx_container_name
    engine = get_engine()
    if (request.args.get('cached') or '') == '1':
        return jsonify(engine.process_status(name).to_dict())
    return jsonify(engine.check_process_compliance(name).to_dict())


@app.route('/api/status/process/restart', methods=['POST'])
def api_status_process_restart():
    name = get_settings_store().get_proxy_settings().nginx_container_name
    result = get_engine().remediate_process(name)
    _audit('process_restart', result.ok, target=name, detail=result.error or result.status.details)
    return jsonify(result.to_dict())


@app.route('/api/audit', methods=['GET'])
def api_audit():
    try:
        limit = int(request.args.get('limit') or 50)
    except ValueError:
        limit = 50
    kind = (request.args.get('kind') or '').strip()
    return jsonify({"events": get_audit_store().list_recent(limit=limit, kind_prefix=kind)})


_disable_background = (os.environ.get('DISABLE_BACKGROUND') or '').strip() == '1'

# Only one gunicorn worker runs the reconciler.
if not _disable_background:
    try:
        if acquire_background_lock():
            start_housekeeping(get_engine)
    except Exception:
        logger.exception("Failed to start background reconciler")


if __name__ == '__main__':
    app.run(host='0.0.0.0', port=5000)
