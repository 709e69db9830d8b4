import pytest

from market_basket import rule_text
from pipeline_errors import ComputationError, ParameterError
from worker_pool import WorkerPool


def square(x):
    return x * x


def fail_on_three(x):
    if x == 3:
        raise ValueError("bad unit")
    return x


def reject_everything(x):
    raise ParameterError("nope", stage="rules")


def test_inline_pool_has_no_executor():
    with WorkerPool(1) as pool:
        assert not pool.running
        assert pool.map(square, [1, 2, 3]) == [1, 4, 9]


def test_thread_pool_keeps_input_order():
    with WorkerPool(4) as pool:
        assert pool.running
        assert pool.map(square, range(20)) == [x * x for x in range(20)]
    assert not pool.running


@pytest.mark.parametrize("n_workers", [1, 3])
def test_failed_unit_aborts_with_stage(n_workers):
    with WorkerPool(n_workers) as pool:
        with pytest.raises(ComputationError) as err:
            pool.map(fail_on_three, range(6), stage="itemsets")
    assert err.value.stage == "itemsets"
    assert "unit 3" in str(err.value)
    assert isinstance(err.value.__cause__, ValueError)


def test_pipeline_errors_keep_their_type():
    with WorkerPool(2) as pool:
        with pytest.raises(ParameterError) as err:
            pool.map(reject_everything, [1, 2])
    assert err.value.stage == "rules"


def test_process_pool():
    with WorkerPool(2, kind="process") as pool:
        assert pool.map(rule_text, [["b", "a"], ["c"]]) == ["a, b", "c"]


@pytest.mark.parametrize("kwargs", [{"n_workers": 0}, {"kind": "fiber"}])
def test_invalid_pool_arguments(kwargs):
    with pytest.raises(ValueError):
        WorkerPool(**kwargs)
