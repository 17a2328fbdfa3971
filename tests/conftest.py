"""Pytest configuration and fixtures."""

import asyncio
import json
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from pulse_engine.core.config import Settings  # noqa: E402
from pulse_engine.core.context import AppContext  # noqa: E402
from pulse_engine.services.github import PullRequest  # noqa: E402


ANALYSIS_JSON = {
    "architecture": {"pattern": "MVC", "strengths": ["Clear layering"], "weaknesses": []},
    "codeQuality": {"score": 80, "issues": ["Long functions"]},
    "bugs": [
        {"severity": "high", "description": "Unchecked None return", "file": "src/app.py"},
        {"severity": "low", "description": "Unused variable", "file": "src/util.py"},
    ],
    "security": [
        {"type": "SQL injection", "severity": "critical", "description": "Raw query", "file": "src/db.py"},
    ],
    "recommendations": [{"priority": 1, "title": "Add tests", "description": "Coverage is low"}],
}


class FakeRunner:
    """Records external commands and answers them from registered handlers.

    Handlers are keyed by (command, first argument) and receive the argument
    list and working directory. Unregistered commands succeed with no output.
    """

    def __init__(self):
        self.calls = []
        self.handlers = {}

    def on(self, command, subcommand, handler):
        self.handlers[(command, subcommand)] = handler

    async def run(self, command, args, cwd=None, timeout=None, input_text=None, env=None, secrets=()):
        args = list(args)
        self.calls.append({
            "command": command,
            "args": args,
            "cwd": cwd,
            "input_text": input_text,
            "env": env,
            "secrets": list(secrets),
        })
        handler = self.handlers.get((command, args[0] if args else None))
        if handler is None:
            return ""
        return handler(args, cwd)

    def git_subcommands(self):
        return [c["args"][0] for c in self.calls if c["command"] == "git"]


class FakeAgent:
    """Returns canned output, or raises a canned error."""

    def __init__(self, output=""):
        self.output = output
        self.error = None
        self.prompts = []

    async def run(self, prompt, cwd):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.output


class FakeGitHub:
    """Records pull-request calls."""

    def __init__(self):
        self.created = []
        self.merged = []
        self.merge_error = None

    async def create_pull_request(self, owner, repo, head, base, title, body, token):
        self.created.append({
            "owner": owner, "repo": repo, "head": head, "base": base,
            "title": title, "body": body, "token": token,
        })
        return PullRequest(url=f"https://github.com/{owner}/{repo}/pull/42", number=42)

    async def merge_pull_request(self, owner, repo, number, token):
        self.merged.append(number)
        if self.merge_error is not None:
            raise self.merge_error
        return True


def fake_clone(args, cwd):
    """Populate the clone target with a tiny repository."""
    target = Path(args[-1])
    (target / "src").mkdir(parents=True, exist_ok=True)
    (target / "src" / "app.py").write_text("print('hello')\n")
    (target / "src" / "db.py").write_text("QUERY = 'select'\n")
    (target / "README.md").write_text("# demo\n")
    (target / "node_modules" / "pkg").mkdir(parents=True, exist_ok=True)
    (target / "node_modules" / "pkg" / "index.js").write_text("module.exports = 1\n")
    return ""


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temp directory."""
    return Settings(
        DATA_PATH=tmp_path / "data",
        STREAM_POLL_INTERVAL=0.01,
        SWEEP_INTERVAL=0,
        JWT_SECRET="",
    )


@pytest.fixture
def fake_runner():
    runner = FakeRunner()
    runner.on("git", "clone", fake_clone)
    return runner


@pytest.fixture
def fake_agent():
    return FakeAgent(output="Reviewing...\n" + json.dumps(ANALYSIS_JSON))


@pytest.fixture
def fake_github():
    return FakeGitHub()


@pytest.fixture
def context(settings, fake_runner, fake_agent, fake_github):
    """AppContext wired with fake collaborators."""
    return AppContext.create(settings, runner=fake_runner, agent=fake_agent, github=fake_github)


@pytest.fixture
def run_with_db(context):
    """Run an async scenario against a freshly initialized database."""

    def run(scenario):
        async def wrapper():
            await context.database.init()
            try:
                return await scenario(context)
            finally:
                await context.job_manager.stop()
                await context.database.close()

        return asyncio.run(wrapper())

    return run


@pytest.fixture
def analysis_json():
    return json.loads(json.dumps(ANALYSIS_JSON))
