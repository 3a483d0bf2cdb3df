"""Run a project's entry script in an instrumented child process.

Host side:   launch(session, "app.py") starts the child and pumps its
             reports into the session's channel.
Child side:  python sandbox.py --report-fd N [--config JSON] ENTRY [ARGS...]
             installs the spy on fd N, then runs ENTRY as __main__.

Reports travel as JSON lines over a pipe dedicated to them, so the
hosted program's own stdout/stderr stay untouched. The host never writes
back.
"""

import argparse
import asyncio
import json
import logging
import os
import runpy
import sys
from dataclasses import dataclass

from spy import SpyConfig, install_spy
from transport import PipeTransport

HERE = os.path.dirname(os.path.abspath(__file__))
READ_LIMIT = 1024 * 1024

log = logging.getLogger("heal.sandbox")


@dataclass
class SandboxRun:
    """A running child and the task pumping its reports."""
    process: asyncio.subprocess.Process
    pump: asyncio.Task
    entry: str

    @property
    def pid(self) -> int:
        return self.process.pid

    async def wait(self) -> int:
        """Wait for exit, then for every report still in the pipe."""
        code = await self.process.wait()
        await self.pump
        return code

    def terminate(self):
        if self.process.returncode is None:
            self.process.terminate()


async def _pump(channel, reader, transport):
    try:
        await channel.pump(reader)
    finally:
        transport.close()


async def launch(
    session,
    entry: str,
    cwd: str | None = None,
    args=(),
    spy_config: SpyConfig | None = None,
    env: dict | None = None,
    stdout=None,
    stderr=None,
    python: str = sys.executable,
) -> SandboxRun:
    """Start ENTRY under the spy and feed its reports to session.channel."""
    read_fd, write_fd = os.pipe()
    cmd = [
        python, os.path.join(HERE, "sandbox.py"),
        "--report-fd", str(write_fd),
        "--config", json.dumps((spy_config or SpyConfig()).to_dict()),
        entry, *args,
    ]
    child_env = dict(os.environ if env is None else env)
    # Lets hosted code import spy for the boundary helpers
    existing = child_env.get("PYTHONPATH")
    child_env["PYTHONPATH"] = HERE + (os.pathsep + existing if existing else "")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd, cwd=cwd, env=child_env, pass_fds=(write_fd,),
            stdout=stdout, stderr=stderr,
        )
    except BaseException:
        os.close(read_fd)
        raise
    finally:
        os.close(write_fd)

    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=READ_LIMIT)
    transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader),
        os.fdopen(read_fd, "rb", 0),
    )
    pump = loop.create_task(_pump(session.channel, reader, transport))
    log.info("sandbox pid %d running %s", process.pid, entry)
    return SandboxRun(process=process, pump=pump, entry=entry)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="sandbox", description="Run a script under heal instrumentation")
    parser.add_argument("--report-fd", type=int, required=True, help="file descriptor for reports")
    parser.add_argument("--config", default="{}", help="spy config as JSON")
    parser.add_argument("entry", help="script to run")
    parser.add_argument("args", nargs=argparse.REMAINDER)
    opts = parser.parse_args(argv)

    try:
        config = SpyConfig.from_dict(json.loads(opts.config))
    except (ValueError, TypeError):
        config = SpyConfig()

    entry = os.path.abspath(opts.entry)
    spy = install_spy(PipeTransport(fd=opts.report_fd), config, origin_url=opts.entry)

    # Look like `python ENTRY ARGS...` to the hosted code
    sys.argv = [entry, *opts.args]
    sys.path[0] = os.path.dirname(entry)
    runpy.run_path(entry, run_name="__main__")
    spy.page_loaded()


if __name__ == "__main__":
    main()
