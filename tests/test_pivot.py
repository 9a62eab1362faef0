from __future__ import annotations

import numpy as np
import pandas as pd
import pytest

from simstudy.analytics.pivot import IndexNode, build_index_tree, make_table
from simstudy.errors import AggregationError, ConfigurationError
from simstudy.pipeline.study_runner import run_study
from simstudy.trials.examples import failing_when_negative

GRID = {
    "n": [50, 100, 250, 500],
    "loc": [0.0, 0.2, 0.4, 0.5, 0.8, 1.0],
    "scale": [1, 2],
}


def cell_code(n, loc, scale):
    return {"v": n * 1000 + loc * 10 + scale, "w": -(n * 1000 + loc * 10 + scale)}


def noisy(n, loc, scale, seed):
    if n == 50 and loc == 0.0:
        raise RuntimeError("celda defectuosa")
    return {"v": float(seed % 10)}


@pytest.fixture(scope="module")
def collapsed_study():
    return run_study(cell_code, 1, GRID, raw=False)


@pytest.fixture(scope="module")
def raw_study():
    return run_study(noisy, 3, GRID, raw=True, seed=21)


def test_example_layout_rows_and_nested_columns(collapsed_study) -> None:
    table = make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], fields=["v"])

    frame = table.frame
    assert frame.shape == (4, 12)
    assert list(frame.index) == [50, 100, 250, 500]
    assert frame.columns.names == ["scale", "loc"]
    # loc es el nivel interno: varía más deprisa
    assert list(frame.columns[:3]) == [(1, 0.0), (1, 0.2), (1, 0.4)]
    assert frame.loc[100, (2, 0.4)] == pytest.approx(100_006.0)
    assert table.row_tree.span == 4
    assert table.col_tree.span == 12
    assert [child.value for child in table.col_tree.children] == [1, 2]


def test_partial_grid_restricts_display_only(collapsed_study) -> None:
    values, _ = collapsed_study
    before = values.copy()

    table = make_table(
        collapsed_study,
        rows=["n"],
        cols=["loc", "scale"],
        partial_grid={"loc": [1.0, 0, 0.5]},
        fields=["v"],
    )

    assert table.frame.shape == (4, 6)
    # orden del grid original, no el del partial grid
    assert list(table.frame.columns.get_level_values("loc")[:3]) == [0.0, 0.5, 1.0]
    np.testing.assert_array_equal(values, before)


def test_round_trip_all_rows_recovers_array(collapsed_study) -> None:
    values, _ = collapsed_study

    table = make_table(collapsed_study, rows=["scale", "loc", "n"], cols=[], fields=["v"])

    assert table.frame.index.names == ["n", "loc", "scale"]
    assert list(table.frame.columns) == ["v"]
    np.testing.assert_array_equal(table.frame["v"].to_numpy(), values[..., 0].reshape(-1))


def test_round_trip_all_columns_recovers_array(collapsed_study) -> None:
    values, _ = collapsed_study

    table = make_table(collapsed_study, rows=[], cols=["scale", "loc", "n"], fields=["w"])

    assert table.frame.shape == (1, 48)
    np.testing.assert_array_equal(table.frame.to_numpy()[0], values[..., 1].reshape(-1))


def test_single_repetition_mean_and_identity_are_idempotent() -> None:
    values, meta = run_study(cell_code, 1, GRID, raw=True)

    table = make_table(
        (values, meta), rows=["scale", "loc", "n"], cols=[], collapse="mean", transform="identity"
    )

    np.testing.assert_array_equal(table.blocks["v"].to_numpy()[:, 0], values[..., 0, 0].reshape(-1))


def test_missing_cells_propagate_through_collapse_and_transform(raw_study) -> None:
    table = make_table(
        raw_study,
        rows=["n"],
        cols=["loc", "scale"],
        collapse={"v": "max"},
        transform={"v": "percent"},
    )

    frame = table.frame
    assert np.isnan(frame.loc[50, (1, 0.0)])
    assert np.isnan(frame.loc[50, (2, 0.0)])
    assert frame.notna().sum().sum() == 48 - 2

    values, _ = raw_study
    expected = values[1, 2, 1, :, 0].max() * 100.0
    assert frame.loc[100, (2, 0.4)] == pytest.approx(expected)


def test_default_collapse_is_mean_over_present_repetitions(raw_study) -> None:
    values, _ = raw_study

    table = make_table(raw_study, rows=["n"], cols=["loc", "scale"])

    assert table.frame.loc[500, (1, 1.0)] == pytest.approx(values[3, 5, 0, :, 0].mean())


def test_repetition_axis_can_be_displayed(raw_study) -> None:
    values, _ = raw_study

    table = make_table(
        raw_study, rows=["n"], cols=["rep"], partial_grid={"loc": [0.8], "scale": [2]}
    )

    assert table.frame.shape == (4, 3)
    assert table.fixed == {"loc": 0.8, "scale": 2}
    np.testing.assert_array_equal(table.frame.to_numpy(), values[:, 4, 1, :, 0])


def test_multiple_fields_stacked_as_column_blocks(collapsed_study) -> None:
    table = make_table(collapsed_study, rows=["n"], cols=["loc", "scale"])

    frame = table.frame
    assert frame.shape == (4, 24)
    assert frame.columns.names == ["field", "scale", "loc"]
    pd.testing.assert_frame_equal(frame["w"], -frame["v"])


def test_multiple_fields_stacked_as_row_blocks(collapsed_study) -> None:
    table = make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], field_layout="rows")

    assert table.frame.shape == (8, 12)
    assert table.frame.index.names == ["field", "n"]


def test_separate_layout_exposes_one_block_per_field(collapsed_study) -> None:
    table = make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], field_layout="separate")

    assert list(table.blocks) == ["v", "w"]
    assert all(block.shape == (4, 12) for block in table.blocks.values())


def test_fixed_parameter_via_single_value_partial_grid(collapsed_study) -> None:
    table = make_table(
        collapsed_study, rows=["n"], cols=["loc"], partial_grid={"scale": [2]}, fields=["v"]
    )

    assert table.frame.shape == (4, 6)
    assert table.fixed == {"scale": 2}
    assert table.frame.loc[250, 0.5] == pytest.approx(250_007.0)
    assert "scale=2" in table.caption


def test_unfixed_parameter_left_out_is_an_aggregation_error(collapsed_study) -> None:
    with pytest.raises(AggregationError, match="scale"):
        make_table(collapsed_study, rows=["n"], cols=["loc"])


def test_partial_grid_value_not_in_grid(collapsed_study) -> None:
    with pytest.raises(AggregationError, match="0.3"):
        make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], partial_grid={"loc": [0.3]})


@pytest.mark.parametrize(
    "rows, cols, partial_grid",
    [
        (["n", "loc"], ["loc", "scale"], None),
        (["n", "bogus"], ["loc", "scale"], None),
        (["n"], ["loc", "scale"], {"bogus": [1]}),
        (["n", "n"], ["loc", "scale"], None),
        (["n", "rep"], ["loc", "scale"], None),
    ],
)
def test_invalid_axes_raise_configuration_error(collapsed_study, rows, cols, partial_grid) -> None:
    with pytest.raises(ConfigurationError):
        make_table(collapsed_study, rows=rows, cols=cols, partial_grid=partial_grid)


def test_unknown_field_or_function_names(collapsed_study) -> None:
    with pytest.raises(ConfigurationError):
        make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], fields=["z"])
    with pytest.raises(ConfigurationError):
        make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], transform="no_existe")
    with pytest.raises(ConfigurationError):
        make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], transform={"z": abs})


def test_rendering_rounds_only_at_render_time(collapsed_study) -> None:
    table = make_table(
        collapsed_study,
        rows=["n"],
        cols=["loc", "scale"],
        fields=["v"],
        transform=lambda v: v / 3.0,
        digits=2,
    )

    assert table.frame.loc[50, (1, 0.0)] == pytest.approx(50_001.0 / 3.0)
    text = table.to_string()
    assert "16667.00" in text
    assert "Repeticiones: 1" in text

    bare = make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], include_metadata=False)
    assert bare.caption is None


def test_index_tree_structure() -> None:
    tree = build_index_tree([("b", [(0, "x"), (1, "y")]), ("a", [(0, 1), (2, 3)])])

    assert isinstance(tree, IndexNode)
    assert tree.depth == 2
    assert tree.span == 4
    assert tree.level_names() == ["b", "a"]
    assert tree.keys() == [("x", 1), ("x", 3), ("y", 1), ("y", 3)]
    assert [node.position for node in tree.children[1].children] == [0, 2]
    assert build_index_tree([]).keys() == [()]


def test_fully_failed_study_pivots_to_missing_table() -> None:
    result = run_study(failing_when_negative, 2, {"a": [-1.0, -2.0], "b": [0.0, 1.0]})

    table = make_table(result, rows=["a"], cols=["b"])

    assert table.fields == ()
    assert table.blocks == {}
    assert table.frame.shape == (2, 2)
    assert list(table.frame.index) == [-1.0, -2.0]
    assert list(table.frame.columns) == [0.0, 1.0]
    assert table.frame.isna().all().all()
    assert "Trials fallidos: 8" in table.to_string()


def test_width_scale_widens_rendered_columns(collapsed_study) -> None:
    narrow = make_table(collapsed_study, rows=["n"], cols=["loc", "scale"], fields=["v"])
    wide = make_table(
        collapsed_study, rows=["n"], cols=["loc", "scale"], fields=["v"], width_scale=3.0
    )

    narrow_width = max(len(line) for line in narrow.to_string().splitlines()[:4])
    wide_width = max(len(line) for line in wide.to_string().splitlines()[:4])
    assert wide_width > narrow_width
    pd.testing.assert_frame_equal(narrow.frame, wide.frame)
