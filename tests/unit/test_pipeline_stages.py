from pathlib import Path

import pytest
import yaml

from nullability_inference import config
from nullability_inference.run_nullability_analysis import build_stage_cmd, derive_paths
from nullability_inference.stages import (
    stage1_extract_facts,
    stage2_build_call_graph,
    stage3_infer_nullability,
    stage4_annotate,
)

LEDGER = """\
docKind: symbols
unit: Processor.m
symbols:
  - name: "processInput:"
    owner: Processor
    kind: method
    returns: {type: "NSString *"}
    params:
      - {name: input, type: "NSString *"}
    body:
      - {kind: guard, line: 3, subject: {kind: param, name: input}, test: nil,
         then: [{kind: return, line: 3, value: {kind: nil}}]}
      - {kind: return, line: 4, value: {kind: call, target: "NSString.stringWithString:",
         args: [{kind: param, name: input}]}}
"""


@pytest.fixture
def project(tmp_path: Path):
    symbols = tmp_path / "dist" / "symbols"
    symbols.mkdir(parents=True)
    (symbols / "Processor.symbols.yaml").write_text(LEDGER, encoding="utf-8")
    yield tmp_path
    config.set_target_root(None)


def _run_all(project: Path) -> Path:
    out = project / "out"
    root = ["--target-root", str(project)]
    assert stage1_extract_facts.main(root + ["--symbols-root", str(project / "dist" / "symbols"),
                                             "--output", str(out / "s1.yaml")]) == 0
    assert stage2_build_call_graph.main(root + ["--input", str(out / "s1.yaml"),
                                                "--output", str(out / "s2.yaml")]) == 0
    assert stage3_infer_nullability.main(root + ["--facts", str(out / "s1.yaml"),
                                                 "--call-graph", str(out / "s2.yaml"),
                                                 "--output", str(out / "s3.yaml")]) == 0
    assert stage4_annotate.main(root + ["--input", str(out / "s3.yaml"),
                                        "--output", str(out / "s4.yaml")]) == 0
    return out


def test_stages_hand_off_through_yaml(project: Path) -> None:
    out = _run_all(project)

    inferred = yaml.safe_load((out / "s3.yaml").read_text(encoding="utf-8"))
    assert inferred["run"]["converged"] is True

    annotations = yaml.safe_load((out / "s4.yaml").read_text(encoding="utf-8"))
    assert annotations["symbols"][0]["declaration"] == \
        "- (nullable NSString *)processInput:(nullable NSString *)input"
    assert annotations["review"] == []


def test_builtin_knowledge_resolves_forwarded_call(project: Path) -> None:
    out = _run_all(project)

    inferred = yaml.safe_load((out / "s3.yaml").read_text(encoding="utf-8"))
    slots = {slot["path"]: slot for slot in inferred["symbols"][0]["signature"]["slots"]}
    resolved = [e for e in slots["return"]["evidence"] if e.get("ref") == "NSString.stringWithString:#return"]
    assert "resolved nonnull" in resolved[0]["detail"]
    assert slots["return"]["flags"] == ["joined"]


def test_missing_inputs_fail_with_exit_code(tmp_path: Path, capsys) -> None:
    try:
        code = stage2_build_call_graph.main(["--target-root", str(tmp_path),
                                             "--input", str(tmp_path / "absent.yaml")])
    finally:
        config.set_target_root(None)

    assert code == 1
    assert "ERROR: Input file not found" in capsys.readouterr().err


def test_stage1_reports_empty_symbols_root(tmp_path: Path, capsys) -> None:
    (tmp_path / "empty").mkdir()
    try:
        code = stage1_extract_facts.main(["--target-root", str(tmp_path), "--symbols-root", str(tmp_path / "empty")])
    finally:
        config.set_target_root(None)

    assert code == 1
    assert "No *.symbols.yaml" in capsys.readouterr().err


def test_driver_builds_module_commands(tmp_path: Path) -> None:
    try:
        paths = derive_paths(tmp_path)
        cmd = build_stage_cmd(3, tmp_path, paths, verbose=False)
    finally:
        config.set_target_root(None)

    assert cmd[1:3] == ["-m", "nullability_inference.stages.stage3_infer_nullability"]
    assert cmd[cmd.index("--facts") + 1] == str(paths["stage1_output"])
    assert cmd[cmd.index("--knowledge-root") + 1] == str(tmp_path.resolve() / "dist" / "knowledge")
