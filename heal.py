#!/usr/bin/env python3
"""heal -- self-healing previews for Python projects.

Usage:
    heal run <entry.py> [args...]       Run entry under instrumentation; repair runtime errors
    heal serve                          Run the multi-session HTTP host
    heal init                           Create a .heal.py config for this project

Options (run):
    --dir DIR                           Project root (default: the entry's directory)
    --dry-run                           Patch in memory only: no file writes, no relaunch
    --timeout SECONDS                   Patch generation timeout
    --no-console-capture                Don't report logged errors/warnings
    --no-network-capture                Don't report failed network requests
    --perf                              Report slow startup (performance monitoring)
    -m MODEL, --model MODEL             Model used for patch generation
    -v, --verbose                       Debug logging

Options (serve):
    --port N                            Listen port (default: $HEAL_PORT or 8000)

Config:
    ~/.heal/config.py                   Global config (Python)
    .heal.py                            Project config (overrides global)

    Config vars: backend, model, openrouter_model, failure_threshold,
                 max_recurrences, cooldown, auto_reset, dedup_window,
                 max_attempts_per_window, attempt_window,
                 repair_timeout, history_limit, recurrence_window,
                 repair_warnings, max_relaunches, include,
                 enable_console_capture, enable_network_error_capture,
                 enable_performance_monitoring, slow_load_threshold_ms

    A `def generate(error, context)` in a config file becomes the patch generator.
"""

import asyncio
import logging
import os
import sys

# Add script directory to path so sibling modules are importable
sys.path.insert(0, os.path.dirname(os.path.realpath(__file__)))

from generator import (
    CLAUDE_MODEL, DEFAULT_MODEL, CallablePatchGenerator, LLMPatchGenerator, anthropic_llm_call,
)
from repair import RepairListener
from sandbox import launch
from session import PreviewSession, SessionConfig
from spy import SpyConfig

# --- Config ---
CONFIG_DIR = os.path.expanduser("~/.heal")
MAX_WORKSPACE_FILE_BYTES = 200 * 1024
SKIP_DIRS = {"__pycache__", "node_modules", "venv", "env", "build", "dist"}

# --- Colors ---
C_RESET = "\033[0m"
C_RED = "\033[31m"
C_GREEN = "\033[32m"
C_YELLOW = "\033[33m"
C_BLUE = "\033[34m"
C_CYAN = "\033[36m"
C_DIM = "\033[2m"
C_BOLD = "\033[1m"

if not sys.stderr.isatty():
    C_RESET = C_RED = C_GREEN = C_YELLOW = C_BLUE = C_CYAN = C_DIM = C_BOLD = ""


def status(icon, msg):
    print(f"  {icon}  {msg}", file=sys.stderr)


# --- Config (Python) ---

DEFAULTS = {
    "backend": "auto",          # auto | anthropic | openrouter | none
    "model": CLAUDE_MODEL,
    "openrouter_model": DEFAULT_MODEL,
    "enable_console_capture": True,
    "enable_network_error_capture": True,
    "enable_performance_monitoring": False,
    "slow_load_threshold_ms": 5000,
    "failure_threshold": 3,
    "max_recurrences": 2,
    "cooldown": 60.0,
    "auto_reset": False,
    "max_attempts_per_window": 3,
    "attempt_window": 60.0,
    "dedup_window": 3.0,
    "repair_timeout": 60.0,
    "history_limit": 50,
    "recurrence_window": 30.0,
    "repair_warnings": False,
    "max_relaunches": 5,
    "include": [".py", ".json", ".toml", ".cfg", ".ini", ".txt", ".html", ".css", ".js"],
    "generate": None,           # custom generator: f(error, context) -> list of patches
}


def _exec_config(path):
    """Execute a Python config file and return its namespace as a dict."""
    ns = {"__builtins__": __builtins__}
    try:
        with open(path) as f:
            exec(f.read(), ns)
    except FileNotFoundError:
        return {}
    except Exception as e:
        print(f"  {C_RED}✗{C_RESET}  Error in {path}: {e}", file=sys.stderr)
        return {}
    # Extract user-defined names (skip dunders and modules)
    return {k: v for k, v in ns.items() if not k.startswith("_")}


def _find_project_config(start=None):
    """Walk up from start (default CWD) to find .heal.py (stops at git root or /)."""
    d = os.path.abspath(start or os.getcwd())
    while True:
        candidate = os.path.join(d, ".heal.py")
        if os.path.isfile(candidate):
            return candidate
        if os.path.isdir(os.path.join(d, ".git")):
            break
        parent = os.path.dirname(d)
        if parent == d:
            break
        d = parent
    return None


def load_config(start=None):
    """Load config: defaults <- ~/.heal/config.py <- .heal.py (project-local).

    Config files are Python. Set variables, define functions.
    A `def generate(error, context)` becomes the patch generator.
    """
    cfg = dict(DEFAULTS)
    cfg.update(_exec_config(os.path.join(CONFIG_DIR, "config.py")))

    project_path = _find_project_config(start)
    if project_path:
        cfg.update(_exec_config(project_path))
        cfg["_project_config"] = project_path

    if os.environ.get("HEAL_MODEL"):
        cfg["model"] = cfg["openrouter_model"] = os.environ["HEAL_MODEL"]
    return cfg


def generate_config():
    """Write a commented .heal.py in CWD."""
    path = os.path.join(os.getcwd(), ".heal.py")
    if os.path.exists(path):
        status(f"{C_YELLOW}!{C_RESET}", ".heal.py already exists")
        return False
    lines = [
        "# .heal.py -- project config for heal",
        "",
        "# Patch generation: auto picks ANTHROPIC_API_KEY, then OPENROUTER_API_KEY",
        f'backend = "{DEFAULTS["backend"]}"',
        f'# model = "{DEFAULTS["model"]}"',
        "",
        "# Circuit breaker",
        f"failure_threshold = {DEFAULTS['failure_threshold']}",
        f"max_recurrences = {DEFAULTS['max_recurrences']}",
        "# auto_reset = True       # reopen after `cooldown` seconds",
        f"# cooldown = {DEFAULTS['cooldown']}",
        f"# max_attempts_per_window = {DEFAULTS['max_attempts_per_window']}  # 0 disables crash-loop detection",
        "",
        "# What the sandbox reports",
        "enable_console_capture = True",
        "enable_network_error_capture = True",
        "enable_performance_monitoring = False",
        "",
        f"repair_timeout = {DEFAULTS['repair_timeout']}",
        f"max_relaunches = {DEFAULTS['max_relaunches']}",
        "",
        "# Custom patch generator. Return a list of",
        '# {"path": ..., "newContent": ...} dicts, or False to decline.',
        "# def generate(error, context):",
        "#     return False",
        "",
    ]
    with open(path, "w") as f:
        f.write("\n".join(lines))
    status(f"{C_GREEN}✓{C_RESET}", f"Created {path}")
    return True


# --- Patch generation backend ---

def get_api_key(key_type="anthropic"):
    """Look up API key: env var > key file."""
    env_vars = {
        "anthropic": "ANTHROPIC_API_KEY",
        "openrouter": "OPENROUTER_API_KEY",
    }
    key = os.environ.get(env_vars.get(key_type, ""), "")
    if not key:
        keyfile = os.path.join(CONFIG_DIR, f"{key_type}_key")
        if os.path.exists(keyfile):
            with open(keyfile) as f:
                key = f.read().strip()
    return key


def resolve_generator(cfg):
    """Pick the patch generator.

    Priority: custom generate fn > explicit backend > auto-detect by API key.
    Returns: (backend_name, generator or None)
    """
    fn = cfg.get("generate")
    if callable(fn):
        return "custom", CallablePatchGenerator(fn)

    backend = cfg.get("backend", "auto")
    if backend == "none":
        return "none", None
    if backend in ("auto", "anthropic"):
        key = get_api_key("anthropic")
        if key:
            model = cfg.get("model") or CLAUDE_MODEL
            return "anthropic", LLMPatchGenerator(model=model, llm_call=anthropic_llm_call(key, model))
        if backend == "anthropic":
            return "none", None
    if backend in ("auto", "openrouter"):
        key = get_api_key("openrouter")
        if key:
            os.environ.setdefault("OPENROUTER_API_KEY", key)
            return "openrouter", LLMPatchGenerator(model=cfg.get("openrouter_model") or DEFAULT_MODEL)
    return "none", None


# --- Workspace ---

def load_workspace(root, include=None):
    """Read the project's text files into {relative posix path: content}."""
    include = tuple(include or DEFAULTS["include"])
    files = {}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith(".") and d not in SKIP_DIRS)
        for name in sorted(filenames):
            if not name.endswith(include) or name.startswith("."):
                continue
            full = os.path.join(dirpath, name)
            try:
                if os.path.getsize(full) > MAX_WORKSPACE_FILE_BYTES:
                    continue
                with open(full, encoding="utf-8") as f:
                    content = f.read()
            except (OSError, UnicodeDecodeError):
                continue
            rel = os.path.relpath(full, root).replace(os.sep, "/")
            files[rel] = content
    return files


def write_files(root, files):
    """Write {relative path: content} under root."""
    root = os.path.abspath(root)
    written = []
    for rel, content in files.items():
        full = os.path.normpath(os.path.join(root, rel))
        if not full.startswith(root + os.sep):
            raise ValueError(f"refusing to write outside {root}: {rel}")
        os.makedirs(os.path.dirname(full), exist_ok=True)
        with open(full, "w", encoding="utf-8") as f:
            f.write(content)
        written.append(rel)
    return written


# --- Run ---

class ConsoleListener(RepairListener):
    """Prints repair activity and writes successful patches to disk."""

    def __init__(self, root, write=True):
        self.root = root
        self.write = write
        self.repaired = asyncio.Event()
        self.tripped = False

    def on_start(self, request):
        status(f"{C_BLUE}▸{C_RESET}", f"Repair #{request.attempt_id}: generating patch...")

    def on_success(self, request, patches):
        for p in patches:
            status(f"{C_GREEN}✓{C_RESET}", f"Patched {p.path}")
        if self.write:
            write_files(self.root, {p.path: p.new_content for p in patches})
        self.repaired.set()

    def on_error(self, request, reason):
        status(f"{C_RED}✗{C_RESET}", f"Repair #{request.attempt_id} failed: {reason}")

    def on_circuit_breaker_tripped(self, reason, stats):
        self.tripped = True
        status(f"{C_RED}!{C_RESET}", f"Circuit breaker tripped: {reason}")
        status(f"{C_DIM}▸{C_RESET}", (
            f"{C_DIM}attempts={stats.get('total_attempts')} "
            f"successes={stats.get('total_successes')} "
            f"failures={stats.get('total_failures')}{C_RESET}"
        ))


def _print_error(error):
    loc = f" {C_DIM}({error.location()}){C_RESET}" if error.location() else ""
    color = C_YELLOW if error.severity.value == "warning" else C_RED
    status(f"{color}●{C_RESET}", f"[{error.kind.value}] {error.message.splitlines()[0][:160]}{loc}")


async def run_preview(entry, cfg, root=None, args=(), dry_run=False):
    """Run entry, repair what breaks, relaunch after each repair. Returns the last exit code."""
    entry = os.path.abspath(entry)
    root = os.path.abspath(root or os.path.dirname(entry))
    backend, generator = resolve_generator(cfg)
    if generator is None:
        status(f"{C_YELLOW}!{C_RESET}", "No patch generator (set ANTHROPIC_API_KEY or OPENROUTER_API_KEY); reporting only")
    else:
        status(f"{C_DIM}▸{C_RESET}", f"Patch generator: {backend}")

    listener = ConsoleListener(root, write=not dry_run)
    session = PreviewSession(
        files=load_workspace(root, cfg.get("include")),
        generator=generator,
        config=SessionConfig.from_dict(cfg),
        listeners=[listener],
    )
    session.add_error_listener(_print_error)
    rel_entry = os.path.relpath(entry, root).replace(os.sep, "/")
    if rel_entry in session.context.files:
        session.set_active_file(rel_entry)
    spy_config = SpyConfig.from_dict(cfg)

    relaunches = 0
    code = 0
    async with session:
        while True:
            session.begin_run(f"python {rel_entry}" if relaunches == 0 else f"relaunch #{relaunches} after repair")
            listener.repaired.clear()
            run = await launch(session, entry, cwd=root, args=list(args), spy_config=spy_config)

            exited = asyncio.ensure_future(run.wait())
            repaired = asyncio.ensure_future(listener.repaired.wait())
            await asyncio.wait({exited, repaired}, return_when=asyncio.FIRST_COMPLETED)
            if not exited.done() and not dry_run:
                # Patched while still running: restart on the new code
                run.terminate()
            code = await exited
            repaired.cancel()
            await session.idle()

            if dry_run or not listener.repaired.is_set():
                break
            if session.breaker.tripped:
                break
            if relaunches >= cfg.get("max_relaunches", DEFAULTS["max_relaunches"]):
                status(f"{C_YELLOW}!{C_RESET}", f"Stopping after {relaunches} relaunches")
                break
            relaunches += 1
            status(f"{C_CYAN}↻{C_RESET}", f"Relaunching {rel_entry}...")

    if session.errors:
        status(f"{C_DIM}▸{C_RESET}", f"{C_DIM}{len(session.errors)} error(s) reported{C_RESET}")
    elif code == 0:
        status(f"{C_GREEN}✓{C_RESET}", "Ran clean")
    return code


# --- CLI ---

def _parse_run_args(args, cfg):
    flags = {"root": None, "dry_run": False, "verbose": False}
    i = 0
    while i < len(args):
        a = args[i]
        if a == "--dry-run":
            flags["dry_run"] = True
        elif a in ("-v", "--verbose"):
            flags["verbose"] = True
        elif a == "--perf":
            cfg["enable_performance_monitoring"] = True
        elif a == "--no-network-capture":
            cfg["enable_network_error_capture"] = False
        elif a == "--no-console-capture":
            cfg["enable_console_capture"] = False
        elif a.startswith("--dir="):
            flags["root"] = a.split("=", 1)[1]
        elif a == "--dir" and i + 1 < len(args):
            i += 1
            flags["root"] = args[i]
        elif a.startswith("--timeout="):
            cfg["repair_timeout"] = float(a.split("=", 1)[1])
        elif a == "--timeout" and i + 1 < len(args):
            i += 1
            cfg["repair_timeout"] = float(args[i])
        elif a.startswith("--model="):
            cfg["model"] = cfg["openrouter_model"] = a.split("=", 1)[1]
        elif a in ("-m", "--model") and i + 1 < len(args):
            i += 1
            cfg["model"] = cfg["openrouter_model"] = args[i]
        else:
            # First positional is the entry; the rest belong to it
            return flags, a, args[i + 1:]
        i += 1
    return flags, None, []


def main():
    if len(sys.argv) < 2 or sys.argv[1] in ("-h", "--help"):
        print(__doc__.strip())
        return

    cmd = sys.argv[1]
    if cmd == "init":
        generate_config()
        return

    if cmd == "serve":
        port = None
        rest = sys.argv[2:]
        for i, a in enumerate(rest):
            if a.startswith("--port="):
                port = int(a.split("=", 1)[1])
            elif a == "--port" and i + 1 < len(rest):
                port = int(rest[i + 1])
        from run_server import main as serve_main
        serve_main(port=port)
        return

    if cmd != "run":
        status(f"{C_RED}✗{C_RESET}", f"Unknown command: {cmd} (see heal --help)")
        sys.exit(2)

    cfg = load_config()
    try:
        flags, entry, entry_args = _parse_run_args(sys.argv[2:], cfg)
    except ValueError as e:
        status(f"{C_RED}✗{C_RESET}", f"Bad option value: {e}")
        sys.exit(2)
    if entry is None:
        status(f"{C_RED}✗{C_RESET}", "Usage: heal run <entry.py> [args...]")
        sys.exit(2)
    if not os.path.isfile(entry):
        status(f"{C_RED}✗{C_RESET}", f"No such file: {entry}")
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if flags["verbose"] else logging.WARNING,
        format="%(name)s: %(message)s",
    )
    try:
        code = asyncio.run(run_preview(entry, cfg, root=flags["root"], args=entry_args, dry_run=flags["dry_run"]))
    except KeyboardInterrupt:
        status(f"{C_DIM}▸{C_RESET}", "Stopped.")
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    main()
