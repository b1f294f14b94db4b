from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
from git import Repo

INIT_LINE = '{"type":"system","subtype":"init","session_id":"tok-123","model":"sonnet","tools":[]}'

_RECORD = """\
printf '%s\\n' "$@" > "{root}/assistant-args.txt"
printf '%s\\n' "$ANTHROPIC_API_KEY" "$DISABLE_TELEMETRY" > "{root}/assistant-env.txt"
pwd > "{root}/assistant-cwd.txt"
"""

SCRIPTS = {
    # Answers every turn with one assistant message and one result.
    "echo": """\
echo '{init}'
turn=0
while IFS= read -r line; do
  if [ "$line" = "exit" ]; then exit 0; fi
  turn=$((turn + 1))
  echo 'not json at all'
  echo '{{"type":"assistant","message":{{"role":"assistant","content":[{{"type":"text","text":"working"}}]}}}}'
  echo "{{\\"type\\":\\"result\\",\\"subtype\\":\\"success\\",\\"result\\":\\"reply $turn\\",\\"is_error\\":false,\\"num_turns\\":$turn,\\"cost_usd\\":0.002}}"
done
""",
    # Succeeds once, then every later turn stops at the turn limit.
    "max_turns": """\
echo '{init}'
IFS= read -r line
echo '{{"type":"result","subtype":"success","result":"done","is_error":false,"num_turns":1,"cost_usd":0.002}}'
while IFS= read -r line; do
  if [ "$line" = "exit" ]; then exit 0; fi
  echo '{{"type":"result","subtype":"error_max_turns","is_error":true,"num_turns":5,"cost_usd":0.0035}}'
done
""",
    # Reads turns but never answers.
    "silent": """\
echo '{init}'
while IFS= read -r line; do
  if [ "$line" = "exit" ]; then exit 0; fi
done
""",
    # Dies on the first turn.
    "crash": """\
echo '{init}'
IFS= read -r line
echo 'fatal: something broke' >&2
exit 3
""",
    # Ignores the exit request.
    "hang": """\
echo '{init}'
exec sleep 30
""",
}


def write_script(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    path.chmod(0o755)
    return path


@pytest.fixture
def make_assistant(tmp_path: Path) -> Callable[..., Path]:
    """Write a fake assistant CLI speaking the stream-json protocol."""

    def _make(kind: str = "echo", name: str = "claude") -> Path:
        body = "#!/bin/sh\n" + _RECORD.format(root=tmp_path) + SCRIPTS[kind].format(init=INIT_LINE)
        return write_script(tmp_path / name, body)

    return _make


@pytest.fixture
def origin_repo(tmp_path: Path) -> tuple[Path, Repo]:
    """A bare origin with ``main``, ``develop`` and tag ``v1.0``, plus a seed clone to push more commits from."""

    origin = tmp_path / "origin.git"
    Repo.init(origin, bare=True)
    seed = Repo.clone_from(str(origin), str(tmp_path / "seed"))
    with seed.config_writer() as writer:
        writer.set_value("user", "name", "Seed")
        writer.set_value("user", "email", "seed@example.com")
    (Path(seed.working_dir) / "README.md").write_text("hello\n", encoding="utf-8")
    seed.git.add("README.md")
    seed.git.commit("-m", "initial")
    seed.git.push("origin", "HEAD:refs/heads/main")
    seed.git.push("origin", "HEAD:refs/heads/develop")
    seed.git.tag("v1.0")
    seed.git.push("origin", "v1.0")
    Repo(origin).git.symbolic_ref("HEAD", "refs/heads/main")
    return origin, seed
