from __future__ import annotations

from typing import Any

import pytest

from jobtemplate.config.loader import check_template, validate
from jobtemplate.config.schema import Step
from jobtemplate.expr.combination import (
    Association,
    Leaf,
    Product,
    count_task_runs,
    expand,
    expand_step,
    parse_combination,
)
from jobtemplate.util.errors import ValidationError


def _step(task_parameters: list[dict[str, Any]], combination: str | None = None) -> Step:
    space: dict[str, Any] = {"taskParameterDefinitions": task_parameters}
    if combination is not None:
        space["combination"] = combination
    template = check_template(
        {
            "specificationVersion": "jobtemplate-2023-09",
            "name": "combo",
            "steps": [
                {
                    "name": "Render",
                    "parameterSpace": space,
                    "script": {"actions": {"onRun": {"command": "echo"}}},
                }
            ],
        }
    )
    return template.steps[0]


def test_default_combination_is_cross_product_in_declaration_order() -> None:
    step = _step(
        [
            {"name": "Num", "type": "INT", "range": [1, 2, 3]},
            {"name": "Letter", "type": "STRING", "range": ["A", "B", "C"]},
        ]
    )
    runs = expand_step(step)
    pairs = [(run.values()["Num"], run.values()["Letter"]) for run in runs]
    assert pairs == [
        (1, "A"), (1, "B"), (1, "C"),
        (2, "A"), (2, "B"), (2, "C"),
        (3, "A"), (3, "B"), (3, "C"),
    ]
    assert [run.index for run in runs] == list(range(9))
    assert count_task_runs(step) == 9
    assert [run.values() for run in expand(step)] == [run.values() for run in runs]


def test_product_keeps_left_operand_slowest() -> None:
    step = _step(
        [
            {"name": "Num", "type": "INT", "range": [1, 2]},
            {"name": "Letter", "type": "STRING", "range": ["A", "B"]},
        ],
        combination="Letter * Num",
    )
    pairs = [(run.values()["Letter"], run.values()["Num"]) for run in expand_step(step)]
    assert pairs == [("A", 1), ("A", 2), ("B", 1), ("B", 2)]
    # Parameters are still listed in declaration order.
    assert list(expand_step(step)[0].parameters) == ["Num", "Letter"]


def test_association_zips_range_expressions() -> None:
    step = _step(
        [
            {"name": "Start", "type": "INT", "range": "1-380:11"},
            {"name": "End", "type": "INT", "range": "11-380:11,380"},
        ],
        combination="(Start, End)",
    )
    pairs = [(run.values()["Start"], run.values()["End"]) for run in expand_step(step)]
    assert len(pairs) == 35
    assert pairs[:2] == [(1, 11), (12, 22)]
    assert pairs[-3:] == [(353, 363), (364, 374), (375, 380)]


def test_nested_product_and_association() -> None:
    step = _step(
        [
            {"name": "Frame", "type": "INT", "range": "1-2"},
            {"name": "Cam", "type": "STRING", "range": ["left", "right"]},
            {"name": "Lens", "type": "FLOAT", "range": [35.0, 50.0]},
        ],
        combination="Frame * (Cam, Lens)",
    )
    runs = expand_step(step)
    assert [str(run) for run in runs] == [
        "Frame=1, Cam=left, Lens=35.0",
        "Frame=1, Cam=right, Lens=50.0",
        "Frame=2, Cam=left, Lens=35.0",
        "Frame=2, Cam=right, Lens=50.0",
    ]


def test_association_cardinality_mismatch_fails_validation() -> None:
    result = validate(
        {
            "specificationVersion": "jobtemplate-2023-09",
            "name": "combo",
            "steps": [
                {
                    "name": "Render",
                    "parameterSpace": {
                        "taskParameterDefinitions": [
                            {"name": "A", "type": "INT", "range": [1, 2, 3]},
                            {"name": "B", "type": "INT", "range": [1, 2]},
                        ],
                        "combination": "(A, B)",
                    },
                    "script": {"actions": {"onRun": {"command": "echo"}}},
                }
            ],
        }
    )
    assert not result.ok
    assert any("requires equal cardinalities" in d.message for d in result.diagnostics)
    assert result.diagnostics[0].location == "steps[0].parameterSpace.combination"


def test_step_without_parameter_space_expands_to_single_run() -> None:
    template = check_template(
        {
            "specificationVersion": "jobtemplate-2023-09",
            "name": "single",
            "steps": [{"name": "Only", "script": {"actions": {"onRun": {"command": "true"}}}}],
        }
    )
    runs = expand_step(template.steps[0])
    assert len(runs) == 1
    assert runs[0].parameters == {}


def test_expansion_is_deterministic() -> None:
    params = [
        {"name": "X", "type": "INT", "range": "1-20:3"},
        {"name": "Y", "type": "STRING", "range": ["p", "q"]},
    ]
    first = [str(run) for run in expand_step(_step(params))]
    second = [str(run) for run in expand_step(_step(params))]
    assert first == second


def test_overrides_replace_expansion_and_are_coerced() -> None:
    step = _step(
        [
            {"name": "Num", "type": "INT", "range": [1, 2, 3]},
            {"name": "Letter", "type": "STRING", "range": ["A", "B"]},
        ]
    )
    runs = expand_step(step, [{"Num": "7", "Letter": "Z"}])
    assert len(runs) == 1
    assert runs[0].values() == {"Num": 7, "Letter": "Z"}


def test_overrides_must_bind_every_parameter() -> None:
    step = _step([{"name": "Num", "type": "INT", "range": [1, 2]}])
    with pytest.raises(ValidationError):
        expand_step(step, [{"Other": 1}])
    with pytest.raises(ValidationError):
        expand_step(step, [{"Num": "not-a-number"}])


def test_parse_combination_builds_tree() -> None:
    node = parse_combination("A * (B, C * D)")
    assert node == Product((Leaf("A"), Association((Leaf("B"), Product((Leaf("C"), Leaf("D")))))))
    assert node.names() == ["A", "B", "C", "D"]
    assert parse_combination("(A)") == Leaf("A")


@pytest.mark.parametrize("text", ["", "A *", "(A, B", "A B", "A + B", "*A", "()"])
def test_parse_combination_rejects_malformed_expressions(text: str) -> None:
    with pytest.raises(ValidationError):
        parse_combination(text)
