import textwrap
from pathlib import Path

import pytest

from matrixci.errors import ConfigurationError
from matrixci.loader import load_workflow, pipeline_from_dict
from matrixci.model import JobTemplate, TriggerEvent, TriggerKind
from matrixci.run import plan_run

REPO_ROOT = Path(__file__).resolve().parents[1]

INTEGRATION_YAML = """
name: Integration
triggers:
  push:
    branches: [main]
    paths-ignore: ["**.md"]
  merge_proposal:
    branches: [main]
actions:
  install-cargo-make: cargo install cargo-make
jobs:
  lint:
    matrix:
      platform: [ubuntu-latest]
    steps:
      - name: Check formatting
        run: cargo make lint-format
      - name: Check typos
        run: typos
        continue-on-error: true
  check:
    fail-fast: false
    matrix:
      os: [ubuntu-latest, windows-latest, macos-latest]
      toolchain: [nightly]
    env:
      RUST_BACKTRACE: full
    cache_dirs: [target]
    steps:
      - name: Install cargo-make
        uses: install-cargo-make
      - name: Install Rust ${{ matrix.toolchain }}
        run: rustup toolchain install ${{ matrix.toolchain }}
        timeout: 600
"""


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return path


def test_yaml_workflow_loads(tmp_path):
    p = load_workflow(_write(tmp_path, "matrixci.yml", INTEGRATION_YAML))

    assert p.name == "Integration"
    lint, check = p.jobs
    assert lint.name == "lint" and lint.fail_fast is True
    assert lint.steps[1].continue_on_error is True
    assert check.fail_fast is False
    assert check.matrix == (("os", ("ubuntu-latest", "windows-latest", "macos-latest")), ("toolchain", ("nightly",)))
    assert check.steps[0].run == "cargo install cargo-make"
    assert check.steps[1].timeout == 600
    assert check.env == {"RUST_BACKTRACE": "full"}
    assert check.cache_dirs == ("target",)

    assert len(plan_run(p)) == 4

    docs_only = TriggerEvent(kind=TriggerKind.PUSH, branch="main", changed_paths=frozenset({"README.md"}))
    assert not p.triggers.accepts(docs_only)


@pytest.mark.parametrize(
    "doc",
    [
        {"jobs": {}},
        {"jobs": {"a": {"steps": []}}},
        {"jobs": {"a": {"steps": [{"name": "s"}]}}},
        {"jobs": {"a": {"steps": [{"name": "s", "run": "x", "uses": "y"}]}}},
        {"jobs": {"a": {"steps": [{"name": "s", "run": "x"}], "surprise": 1}}},
        {"jobs": {"a": {"steps": [{"name": "s", "run": "x", "timeout": -1}]}}},
        {"triggers": {"tag": {}}, "jobs": {"a": {"steps": [{"name": "s", "run": "x"}]}}},
        ["not", "a", "mapping"],
    ],
)
def test_invalid_documents_are_configuration_errors(doc):
    with pytest.raises(ConfigurationError):
        pipeline_from_dict(doc)


def test_undefined_action_is_configuration_error():
    doc = {"jobs": {"a": {"steps": [{"name": "setup", "uses": "missing"}]}}}
    with pytest.raises(ConfigurationError) as exc:
        pipeline_from_dict(doc)
    assert exc.value.job == "a"
    assert exc.value.step == "setup"


def test_empty_axis_in_yaml_fails_at_run_start():
    p = pipeline_from_dict({"jobs": {"a": {"matrix": {"os": []}, "steps": [{"name": "s", "run": "x"}]}}})
    with pytest.raises(ConfigurationError):
        plan_run(p)


def test_bad_yaml_syntax(tmp_path):
    with pytest.raises(ConfigurationError):
        load_workflow(_write(tmp_path, "broken.yaml", "jobs: [unclosed"))


def test_missing_file_and_wrong_suffix(tmp_path):
    with pytest.raises(ConfigurationError):
        load_workflow(tmp_path / "nope.py")
    with pytest.raises(ConfigurationError):
        load_workflow(_write(tmp_path, "ci.toml", ""))


def test_python_workflow_with_jobs_list(tmp_path):
    path = _write(
        tmp_path,
        "demo_workflow.py",
        """
        from matrixci import wf, job, sh, triggers, on_push

        TRIGGERS = triggers(on_push(branches=["main"]))

        def workflow():
            return wf(job("lint", sh("fmt", "cargo fmt --check")))
        """,
    )
    p = load_workflow(path)
    assert p.name == "demo_workflow"
    assert [j.name for j in p.jobs] == ["lint"]
    assert p.triggers.rules[0].branches == ("main",)


def test_python_workflow_with_jobs_constant(tmp_path):
    path = _write(
        tmp_path,
        "const_workflow.py",
        """
        from matrixci import job, sh
        JOBS = [job("a", sh("s", "true"))]
        """,
    )
    assert isinstance(load_workflow(path).jobs[0], JobTemplate)


def test_python_workflow_must_produce_jobs(tmp_path):
    path = _write(tmp_path, "bad_workflow.py", "def workflow():\n    return 42\n")
    with pytest.raises(ConfigurationError):
        load_workflow(path)


def test_repository_workflow_plans_lint_check_test():
    p = load_workflow(REPO_ROOT / "matrixci_workflow.py")
    assert p.name == "Integration"

    cells = [i.cell for i in plan_run(p)]
    assert cells[0] == "lint:platform=ubuntu-latest"
    assert len(cells) == 7
    assert "test:os=macos-latest,toolchain=nightly" in cells
    assert all(not j.fail_fast for j in p.jobs if j.name in ("check", "test"))


def test_loader_module_documents_its_contract():
    from matrixci import loader

    assert loader.__doc__.startswith("Workflow loading.")
