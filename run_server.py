#!/usr/bin/env python3
"""heal host server: multi-session repair over HTTP.

Patch generation uses ANTHROPIC_API_KEY, else OPENROUTER_API_KEY (never in
code). With neither set the host still collects and classifies errors but
starts no repairs. Operator endpoints are guarded by HEAL_API_KEY.
"""

import os, sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from session import SessionConfig, SessionRegistry
from generator import CLAUDE_MODEL, DEFAULT_MODEL, LLMPatchGenerator, anthropic_llm_call


def _env_number(env, name, cast):
    raw = env.get(name)
    if not raw:
        return None
    try:
        return cast(raw)
    except ValueError:
        print(f"[server] Ignoring {name}={raw!r} (not a number)", file=sys.stderr)
        return None


def session_config_from_env(env=None) -> SessionConfig:
    """HEAL_FAILURE_THRESHOLD, HEAL_REPAIR_TIMEOUT, ... override the defaults."""
    env = os.environ if env is None else env
    return SessionConfig.from_dict({
        "failure_threshold": _env_number(env, "HEAL_FAILURE_THRESHOLD", int),
        "max_recurrences": _env_number(env, "HEAL_MAX_RECURRENCES", int),
        "repair_timeout": _env_number(env, "HEAL_REPAIR_TIMEOUT", float),
        "cooldown": _env_number(env, "HEAL_COOLDOWN", float),
        "max_attempts_per_window": _env_number(env, "HEAL_MAX_ATTEMPTS_PER_WINDOW", int),
        "attempt_window": _env_number(env, "HEAL_ATTEMPT_WINDOW", float),
        "auto_reset": env.get("HEAL_AUTO_RESET", "").lower() in ("1", "true", "yes"),
        "dedup_window": _env_number(env, "HEAL_DEDUP_WINDOW", float),
    })


def generator_factory_from_env(env=None):
    """Returns (backend_name, factory or None). Each session gets its own generator."""
    env = os.environ if env is None else env
    anthropic_key = env.get("ANTHROPIC_API_KEY", "")
    if anthropic_key:
        model = env.get("HEAL_MODEL") or CLAUDE_MODEL
        call = anthropic_llm_call(anthropic_key, model)
        return "anthropic", lambda: LLMPatchGenerator(model=model, llm_call=call)
    if env.get("OPENROUTER_API_KEY"):
        model = env.get("HEAL_MODEL") or DEFAULT_MODEL
        return "openrouter", lambda: LLMPatchGenerator(model=model)
    return "none", None


def build_app(env=None):
    env = os.environ if env is None else env
    backend, factory = generator_factory_from_env(env)
    registry = SessionRegistry(generator_factory=factory, config=session_config_from_env(env))
    app = create_app(registry=registry, api_key=env.get("HEAL_API_KEY", ""))
    return app, backend


def main(port=None, host="0.0.0.0"):
    port = port or int(os.environ.get("HEAL_PORT", "8000"))
    app, backend = build_app()
    if backend == "none":
        print("[server] No ANTHROPIC_API_KEY or OPENROUTER_API_KEY: collecting errors only")
    else:
        print(f"[server] Patch generation via {backend}")
    if not os.environ.get("HEAL_API_KEY"):
        print("[server] HEAL_API_KEY not set: operator endpoints are open")
    print(f"[server] Listening on :{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
