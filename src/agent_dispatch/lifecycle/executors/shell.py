"""POSIX shell scripts shared by the process-based executors.

Every task runs under a small wrapper script that owns three artifacts in
its task directory: `output.log`, `exit_code` (written atomically once the
payload returns) and the heartbeat record, rewritten in the background
every interval. Probing then only needs the task directory and the pid.
"""

from __future__ import annotations

import shlex

from agent_dispatch.lifecycle.errors import ProbeUnknown
from agent_dispatch.lifecycle.models import (
    LaunchSpec,
    ProbeResult,
    ProbeState,
    ResourceUsage,
    TaskType,
)

WRAPPER_NAME = "run.sh"
OUTPUT_NAME = "output.log"
EXIT_CODE_NAME = "exit_code"
PID_NAME = "pid"
HEARTBEAT_NAME = "heartbeat.json"

# `cd` into a missing workspace mirrors the shell's "command not found" code.
WORKSPACE_MISSING_EXIT_CODE = 127


def shell_path(path: str) -> str:
    """Quote a path for sh while keeping a leading `~` expandable."""

    if path == "~":
        return '"$HOME"'
    if path.startswith("~/"):
        return '"$HOME"/' + shlex.quote(path[2:])
    return shlex.quote(path)


def task_dir_path(task_root: str, task_id: str) -> str:
    return f"{task_root.rstrip('/')}/{task_id}"


def build_payload(spec: LaunchSpec, *, claude_path: str) -> str:
    """Render the command line the wrapper runs for this task."""

    if spec.task_type is TaskType.SHELL:
        return shlex.join(["sh", "-c", spec.command or ""])
    argv = [
        claude_path,
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "-p",
        spec.prompt or "",
    ]
    if spec.max_turns is not None:
        argv.extend(["--max-turns", str(spec.max_turns)])
    for tool in spec.allowed_tools:
        argv.extend(["--allowedTools", tool])
    return shlex.join(argv)


def render_wrapper_script(
    spec: LaunchSpec,
    *,
    payload: str,
    heartbeat_file: str,
    env: dict[str, str] | None = None,
    capture_output: bool = True,
) -> str:
    """Render the wrapper that runs `payload` and publishes heartbeats.

    `heartbeat_file` is a shell expression; `"$TASK_DIR"` may be used in it.
    With `capture_output=False` the payload writes to the wrapper's own
    stdout and its exit status becomes the wrapper's, which is what a
    container runtime records.
    """

    lines = [
        "#!/bin/sh",
        f"# agent-dispatch task {spec.task_id}",
        'TASK_DIR="$(pwd)"',
        f"HEARTBEAT_FILE={heartbeat_file}",
        f"INTERVAL={int(spec.heartbeat_interval)}",
    ]
    for key, value in sorted((env or {}).items()):
        lines.append(f"export {key}={shlex.quote(value)}")
    lines += [
        "beat() {",
        "  while :; do",
        '    printf \'{"timestamp": %s, "interval": %s}\\n\' "$(date +%s)" "$INTERVAL" \\',
        '      > "$HEARTBEAT_FILE.tmp" && mv -f "$HEARTBEAT_FILE.tmp" "$HEARTBEAT_FILE"',
        '    sleep "$INTERVAL"',
        "  done",
        "}",
        "finish() {",
        '  kill "$BEAT_PID" 2>/dev/null',
    ]
    if capture_output:
        lines += [
            f'  echo "$1" > "$TASK_DIR/{EXIT_CODE_NAME}.tmp" \\',
            f'    && mv -f "$TASK_DIR/{EXIT_CODE_NAME}.tmp" "$TASK_DIR/{EXIT_CODE_NAME}"',
        ]
    lines += [
        '  exit "$1"',
        "}",
        "beat &",
        "BEAT_PID=$!",
    ]
    if spec.workspace:
        lines.append(
            f"cd {shell_path(spec.workspace)} || finish {WORKSPACE_MISSING_EXIT_CODE}",
        )
    if capture_output:
        lines.append(f'{payload} > "$TASK_DIR/{OUTPUT_NAME}" 2>&1 < /dev/null')
    else:
        lines.append(f"{payload} 2>&1 < /dev/null")
    lines += ['finish "$?"', ""]
    return "\n".join(lines)


def render_launch_script(task_dir: str) -> str:
    """Store the wrapper read from stdin and start it detached.

    `setsid` makes the wrapper a session and process-group leader, so it
    survives the caller's session and can be signalled as a group later.
    Prints the wrapper's pid.
    """

    directory = shell_path(task_dir)
    return "\n".join(
        [
            "set -e",
            f"mkdir -p {directory}",
            f"cd {directory}",
            f"cat > {WRAPPER_NAME}",
            "if command -v setsid >/dev/null 2>&1; then",
            f"  setsid nohup sh {WRAPPER_NAME} >/dev/null 2>&1 </dev/null &",
            "else",
            f"  nohup sh {WRAPPER_NAME} >/dev/null 2>&1 </dev/null &",
            "fi",
            f"echo $! > {PID_NAME}",
            f"cat {PID_NAME}",
            "",
        ],
    )


def render_probe_script(task_dir: str, pid: int | None) -> str:
    """Print `exited <code>`, `alive <cpu> <rss>` or `absent`; always exits 0."""

    pid_expr = str(pid) if pid is not None else f'"$(cat {PID_NAME} 2>/dev/null)"'
    report_exit = (
        f"if [ -f {EXIT_CODE_NAME} ]; then echo \"exited $(cat {EXIT_CODE_NAME})\"; exit 0; fi"
    )
    return "\n".join(
        [
            f"cd {shell_path(task_dir)} 2>/dev/null || {{ echo absent; exit 0; }}",
            report_exit,
            f"PID={pid_expr}",
            'if [ -n "$PID" ] && kill -0 "$PID" 2>/dev/null; then',
            '  case "$(ps -o stat= -p "$PID" 2>/dev/null)" in',
            "    Z*) ;;",
            '    *) echo "alive $(ps -o %cpu= -o rss= -p "$PID" 2>/dev/null)"; exit 0 ;;',
            "  esac",
            "fi",
            # The process may have finished between the two checks.
            report_exit,
            "echo absent",
            "",
        ],
    )


def render_terminate_script(task_dir: str, pid: int | None) -> str:
    """Send SIGTERM to the wrapper's process group; print `signalled` or `gone`."""

    pid_expr = str(pid) if pid is not None else f'"$(cat {PID_NAME} 2>/dev/null)"'
    return "\n".join(
        [
            f"cd {shell_path(task_dir)} 2>/dev/null || {{ echo gone; exit 0; }}",
            f"PID={pid_expr}",
            'if [ -n "$PID" ] && kill -0 "$PID" 2>/dev/null; then',
            '  kill -TERM -- "-$PID" 2>/dev/null || kill -TERM "$PID" 2>/dev/null || true',
            "  echo signalled",
            "else",
            "  echo gone",
            "fi",
            "",
        ],
    )


def render_tail_script(task_dir: str, lines: int) -> str:
    path = f"{shell_path(task_dir)}/{OUTPUT_NAME}"
    return f"tail -n {int(lines)} {path} 2>/dev/null || true\n"


def render_remove_script(task_dir: str) -> str:
    return f"rm -rf {shell_path(task_dir)}\n"


def parse_pid(output: str) -> int:
    """Last non-empty line of the launch script output as a pid."""

    candidates = [line.strip() for line in output.splitlines() if line.strip()]
    if not candidates:
        raise ValueError("Launch did not report a pid.")
    try:
        pid = int(candidates[-1])
    except ValueError as error:
        raise ValueError(f"Launch reported an invalid pid: {candidates[-1]!r}") from error
    if pid <= 0:
        raise ValueError(f"Launch reported an invalid pid: {pid}")
    return pid


def parse_probe_output(output: str, *, task_id: str | None = None) -> ProbeResult:
    """Turn the probe script's one-line report into a `ProbeResult`.

    Anything unexpected is ambiguous and raises `ProbeUnknown`.
    """

    words = output.split()
    if not words:
        raise ProbeUnknown("Probe produced no output.", task_id=task_id)
    verdict, rest = words[0], words[1:]
    if verdict == "absent":
        return ProbeResult(state=ProbeState.ABSENT, detail="process not found")
    if verdict == "exited":
        try:
            exit_code = int(rest[0])
        except (IndexError, ValueError) as error:
            raise ProbeUnknown(
                f"Unreadable exit code in probe output: {output.strip()!r}",
                task_id=task_id,
            ) from error
        return ProbeResult(state=ProbeState.EXITED, exit_code=exit_code)
    if verdict == "alive":
        return ProbeResult(state=ProbeState.ALIVE, resources=parse_resources(rest))
    raise ProbeUnknown(f"Unexpected probe output: {output.strip()!r}", task_id=task_id)


def parse_resources(fields: list[str]) -> ResourceUsage | None:
    """Parse `ps -o %cpu= -o rss=` columns; missing columns read as unknown."""

    if not fields:
        return None
    cpu: float | None
    rss: int | None
    try:
        cpu = float(fields[0])
    except ValueError:
        cpu = None
    try:
        rss = int(fields[1]) if len(fields) > 1 else None
    except ValueError:
        rss = None
    return ResourceUsage(cpu_percent=cpu, rss_kb=rss)
