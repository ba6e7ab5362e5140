import pytest
from pathlib import Path
import sys
ROOT = Path(__file__).resolve().parent.parent
if str(ROOT / 'src') not in sys.path:
    sys.path.insert(0, str(ROOT / 'src'))

from gatecheck import load_pipeline_from_string, PipelineError, load_pipeline  # noqa: E402

VALID_YAML = """
version: "1.0"
name: demo
triggers:
  push:
    branches: [main]
    paths: ['src/**']
  pull_request:
toolchain:
  tool: cargo
  components: [rustfmt]
caches:
  - key: deps
    path: .deps
stages:
  - name: fmt
    uses: cargo
    run: fmt --check
  - name: lint
    uses: cargo
    env:
      RUSTFLAGS: -C debuginfo=0
    run: |
      clippy --all-features
      clippy -- -D warnings
  - name: docs
    uses: command
    continue_on_failure: true
    run:
      - echo docs
"""


def test_load_pipeline_from_string_ok():
    cfg = load_pipeline_from_string(VALID_YAML)
    assert cfg.version == "1.0"
    assert cfg.name == "demo"
    assert [s.name for s in cfg.stages] == ["fmt", "lint", "docs"]
    lint = cfg.find_stage("lint")
    assert lint is not None
    assert lint.run == ["clippy --all-features", "clippy -- -D warnings"]
    assert lint.env == {"RUSTFLAGS": "-C debuginfo=0"}
    assert lint.continue_on_failure is False
    assert cfg.find_stage("docs").continue_on_failure is True
    assert cfg.toolchain.tool == "cargo"
    assert cfg.toolchain.components == ("rustfmt",)


def test_triggers_parsed_with_defaults():
    cfg = load_pipeline_from_string(VALID_YAML)
    push = cfg.triggers["push"]
    assert push.branches == ("main",)
    assert push.paths == ("src/**",)
    pr = cfg.triggers["pull_request"]
    assert pr.branches == ("**",)
    assert pr.paths == ()


def test_pipeline_missing_version():
    bad = "stages: []"
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "missing 'version'" in str(e.value)


def test_pipeline_missing_stages():
    bad = "version: 1.0"
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "non-empty list" in str(e.value)


def test_stage_missing_uses():
    bad = """
version: 1.0
stages:
  - name: fmt
    run: fmt
"""
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "missing string 'uses'" in str(e.value)


def test_stage_missing_run():
    bad = """
version: 1.0
stages:
  - name: fmt
    uses: cargo
"""
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "missing 'run'" in str(e.value)


def test_stage_env_type_error():
    bad = """
version: 1.0
stages:
  - name: x
    uses: command
    run: "true"
    env: 123
"""
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "must be a mapping" in str(e.value)


def test_duplicate_stage_names_rejected():
    bad = """
version: 1.0
stages:
  - {name: a, uses: command, run: "true"}
  - {name: a, uses: command, run: "false"}
"""
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "Duplicate stage names: a" in str(e.value)


def test_unknown_trigger_rejected():
    bad = """
version: 1.0
triggers:
  schedule: {}
stages:
  - {name: a, uses: command, run: "true"}
"""
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "Unknown trigger 'schedule'" in str(e.value)


def test_duplicate_cache_keys_rejected():
    bad = """
version: 1.0
caches:
  - {key: k, path: /a}
  - {key: k, path: /b}
stages:
  - {name: a, uses: command, run: "true"}
"""
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string(bad)
    assert "unique" in str(e.value)


def test_yaml_parse_error():
    with pytest.raises(PipelineError) as e:
        load_pipeline_from_string("version: [1.0\n")
    assert "YAML parse error" in str(e.value)


def test_load_pipeline_file_keeps_relative_cache_paths(tmp_path: Path):
    p = tmp_path / "pipe.yaml"
    p.write_text(VALID_YAML)
    cfg = load_pipeline(p)
    assert cfg.source_path == p
    assert cfg.find_cache("deps").path == Path(".deps")


def test_load_pipeline_missing_file(tmp_path: Path):
    with pytest.raises(PipelineError) as e:
        load_pipeline(tmp_path / "nope.yaml")
    assert "Cannot read pipeline file" in str(e.value)


def test_bundled_rust_workflow():
    cfg = load_pipeline(ROOT / "workflows" / "ci-rust.yaml")
    assert cfg.name == "ci-rust"
    assert set(cfg.triggers) == {"push", "pull_request"}
    for rule in cfg.triggers.values():
        assert rule.branches == ("master",)
        assert rule.paths == ("src/**", "Cargo.toml", "workflows/ci-rust.yaml")
    assert [(c.key, str(c.path)) for c in cfg.caches] == [
        ("cargo-cache-test-rs", "/github/home/.cargo"),
        ("ubuntu-x86-64-target-cache-stable", "/github/home/target"),
    ]
    assert [s.run for s in cfg.stages] == [
        ["fmt --all -- --check"],
        ["clippy --all-features", "clippy -- -D warnings"],
        ["test --all-features -- --test-threads=1"],
    ]
    assert cfg.stages[1].env == {"RUSTFLAGS": "-C debuginfo=0"}
    assert all(s.uses == "cargo" and not s.continue_on_failure for s in cfg.stages)
    assert cfg.toolchain.components == ("rustfmt", "clippy")
