"""Tests for the single and pair clamping objective functions."""
import logging
import math

import numpy as np
import pytest

from clamping import compute_clamping_configuration, with_ranking
from conftest import make_feature
from formula import CompileError
from objective_functions import (
    DEFAULT_PAIR_FORMULA,
    DEFAULT_SINGLE_FORMULA,
    PAIR_FORMULA_ENV,
    PAIR_NORMALIZE_ENV,
    SINGLE_FORMULA_ENV,
    SINGLE_NORMALIZE_ENV,
    ClampingPair,
    ObjectiveFunctionConfig,
    create_pair_clamping_function,
    create_single_clamping_function,
    make_clamping_pairs,
    pair_clamping_features,
    rank_clamping_configurations,
    select_best_pair,
    single_clamping_features,
)


def features(*face_ids):
    return [make_feature(f"f{i}", [i]) for i in face_ids]


@pytest.fixture
def configure(box_body, vise_faces):
    """Build a configuration of the box with the given features and height."""
    def build(fully=(), partially=(), height=0.0, swap=False):
        one, two, bottom = vise_faces
        if swap:
            one, two = two, one
        return compute_clamping_configuration(
            box_body, one, two, bottom,
            fully_machinable=fully, partially_machinable=partially, clamping_height=height,
        )
    return build


class TestObjectiveFunctionConfig:

    def test_defaults(self):
        config = ObjectiveFunctionConfig.from_env({})
        assert config.single_formula == DEFAULT_SINGLE_FORMULA
        assert config.pair_formula == DEFAULT_PAIR_FORMULA
        assert config.normalize_single
        assert config.normalize_pair

    def test_from_env(self):
        config = ObjectiveFunctionConfig.from_env({
            SINGLE_FORMULA_ENV: "FM - CG",
            SINGLE_NORMALIZE_ENV: "1",
            PAIR_FORMULA_ENV: "FT",
            PAIR_NORMALIZE_ENV: "0",
        })
        assert config.single_formula == "FM - CG"
        assert config.normalize_single
        assert config.pair_formula == "FT"
        assert not config.normalize_pair

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv(SINGLE_FORMULA_ENV, "CA")
        monkeypatch.setenv(SINGLE_NORMALIZE_ENV, "no")
        config = ObjectiveFunctionConfig.from_env()
        assert config.single_formula == "CA"
        assert not config.normalize_single

    def test_empty_formula_keeps_default(self):
        config = ObjectiveFunctionConfig.from_env({SINGLE_FORMULA_ENV: ""})
        assert config.single_formula == DEFAULT_SINGLE_FORMULA


class TestSingleClampingFeatures:

    def test_feature_names(self):
        assert list(single_clamping_features()) == ["CG", "LA", "FM", "PM", "CA", "CT", "CH", "MD"]

    def test_values(self, configure):
        config = configure(fully=features(1, 2), partially=features(3), height=5.0)
        values = {name: f(config) for name, f in single_clamping_features().items()}
        assert values["CG"] == pytest.approx(25.0)
        assert values["LA"] == 0.0
        assert values["FM"] == 2
        assert values["PM"] == 1
        assert values["CA"] == pytest.approx(4000.0)
        assert values["CT"] == pytest.approx(60.0)
        assert values["CH"] == pytest.approx(5.0)
        assert values["MD"] == pytest.approx(100.0)

    def test_default_formula_compiles(self):
        objective = create_single_clamping_function(ObjectiveFunctionConfig())
        assert objective.expression == DEFAULT_SINGLE_FORMULA
        assert objective.normalize

    def test_invalid_formula(self):
        with pytest.raises(CompileError):
            create_single_clamping_function(ObjectiveFunctionConfig(single_formula="FM + XX"))


class TestPairClampingFeatures:

    def test_feature_names(self):
        assert list(pair_clamping_features()) == [
            "P1", "P2", "PT", "F1", "F2", "FT", "OF1", "OF2", "FLIP", "ROLL", "PITCH", "YAW",
        ]

    def test_machinable_totals(self, configure):
        one = configure(fully=features(1, 2), partially=features(10))
        two = configure(fully=features(2, 3), partially=features(10), height=5.0)
        pair = ClampingPair(with_ranking(one, 0, 1.5), with_ranking(two, 0, 0.5))
        values = {name: f(pair) for name, f in pair_clamping_features().items()}
        assert values["P1"] == 1
        assert values["P2"] == 1
        # Partially machinable from both sides counts as done
        assert values["PT"] == 0
        assert values["F1"] == 2
        assert values["F2"] == 2
        assert values["FT"] == 4
        assert values["OF1"] == 1.5
        assert values["OF2"] == 0.5

    def test_same_orientation_angles(self, configure):
        pair = ClampingPair(configure(), configure(height=5.0))
        values = {name: f(pair) for name, f in pair_clamping_features().items()}
        assert values["FLIP"] is False
        assert values["ROLL"] == pytest.approx(0.0, abs=1e-12)
        assert values["PITCH"] == pytest.approx(0.0, abs=1e-12)
        assert values["YAW"] == pytest.approx(0.0, abs=1e-12)

    def test_flipped_pair(self, configure):
        pair = ClampingPair(configure(), configure(swap=True))
        assert pair_clamping_features()["FLIP"](pair) is True

    def test_default_formula_compiles(self):
        objective = create_pair_clamping_function(ObjectiveFunctionConfig())
        assert objective.expression == DEFAULT_PAIR_FORMULA


class TestRankClampingConfigurations:

    def test_orders_and_annotates(self, configure):
        low = configure(fully=features(1), height=0.0)
        high = configure(fully=features(1, 2), height=10.0)
        objective = create_single_clamping_function(
            ObjectiveFunctionConfig(single_formula="FM", normalize_single=False),
        )
        ranked = rank_clamping_configurations([low, high], objective)
        assert [c.priority for c in ranked] == [0, 1]
        assert [c.objective_value for c in ranked] == [2.0, 1.0]
        assert ranked[0].clamping_height == 10.0
        # Inputs are left untouched
        assert low.priority == -1
        assert math.isnan(high.objective_value)

    def test_drops_duplicates_and_previous(self, configure):
        a = configure(height=0.0)
        a_again = configure(height=0.0)
        b = configure(height=10.0)
        objective = create_single_clamping_function(
            ObjectiveFunctionConfig(single_formula="CH", normalize_single=False),
        )
        assert len(rank_clamping_configurations([a, a_again, b], objective)) == 2

        previous = [configure(height=10.0)]
        ranked = rank_clamping_configurations([a, b], objective, previous)
        assert len(ranked) == 1
        assert ranked[0].clamping_height == 0.0

    def test_ties_broken_by_orientation(self, configure):
        a = configure()
        b = configure(swap=True)
        objective = create_single_clamping_function(
            ObjectiveFunctionConfig(single_formula="FM", normalize_single=False),
        )
        ranked = rank_clamping_configurations([a, b], objective)
        expected = max([a, b], key=lambda c: tuple(round(v, 6) for v in c.euler_angles))
        assert np.array_equal(ranked[0].reference_frame.y_axis, expected.reference_frame.y_axis)

    def test_non_finite_configuration_excluded(self, configure, vise_faces):
        one = vise_faces[0]
        spot = make_feature("spot", [3], [one.centroid, one.centroid])
        infinite = configure(fully=[spot], height=5.0)
        finite = configure(height=0.0)
        objective = create_single_clamping_function(
            ObjectiveFunctionConfig(single_formula="FM", normalize_single=False),
        )
        ranked = rank_clamping_configurations([infinite, finite], objective)
        assert len(ranked) == 1
        assert ranked[0].clamping_height == 0.0

    def test_default_objective(self, configure):
        candidates = [
            configure(fully=features(1, 2, 3), height=0.0),
            configure(fully=features(1), partially=features(4, 5), height=10.0),
        ]
        ranked = rank_clamping_configurations(candidates, create_single_clamping_function(ObjectiveFunctionConfig()))
        assert len(ranked) == 2
        assert len(ranked[0].fully_machinable) == 3


class TestPairs:

    def test_make_clamping_pairs(self, configure):
        first = [configure(height=0.0), configure(height=1.0)]
        second = [configure(height=2.0), configure(height=3.0), configure(height=4.0)]
        pairs = make_clamping_pairs(first, second)
        assert len(pairs) == 6
        assert pairs[0].one is first[0] and pairs[0].two is second[0]
        assert pairs[3].one is first[1] and pairs[3].two is second[0]

    def test_select_best_pair(self, configure):
        objective = create_single_clamping_function(
            ObjectiveFunctionConfig(single_formula="FM", normalize_single=False),
        )
        first = rank_clamping_configurations(
            [configure(fully=features(1)), configure(fully=features(1, 2), height=5.0)], objective,
        )
        second = rank_clamping_configurations([configure(fully=features(3), height=2.0)], objective)
        pair_objective = create_pair_clamping_function(
            ObjectiveFunctionConfig(pair_formula="F1 + F2", normalize_pair=False),
        )
        best = select_best_pair(make_clamping_pairs(first, second), pair_objective)
        assert len(best.one.fully_machinable) == 2
        assert best.two is second[0]

    def test_falls_back_to_first_pair(self, configure, caplog):
        """Unranked setups have NaN objective values, so no pair survives filtering."""
        pairs = make_clamping_pairs([configure(), configure(height=3.0)], [configure(height=6.0)])
        objective = create_pair_clamping_function(ObjectiveFunctionConfig(normalize_pair=False))
        with caplog.at_level(logging.WARNING, logger="objective_functions"):
            best = select_best_pair(pairs, objective)
        assert best is pairs[0]
        assert "using the first pair" in caplog.text

    def test_empty_pairs(self):
        objective = create_pair_clamping_function(ObjectiveFunctionConfig())
        assert select_best_pair([], objective) is None
