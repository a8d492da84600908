"""Tests for the step engine – runs without any external dependencies."""

import pytest

from idmp_registry.errors import MigrationStepFailed
from idmp_registry.etl.dag import DAG, RunStatus, StepStatus


def test_linear_dag_executes_in_order():
    """Steps run in dependency order and results flow downstream."""
    execution_log = []

    def step_a(ctx):
        execution_log.append("a")
        return {"from_a": 1}

    def step_b(ctx):
        execution_log.append("b")
        assert ctx["from_a"] == 1
        return {"from_b": 2}

    def step_c(ctx):
        execution_log.append("c")
        assert ctx["from_b"] == 2

    dag = DAG("test_linear")
    dag.add_task("a", step_a)
    dag.add_task("b", step_b, depends_on=["a"])
    dag.add_task("c", step_c, depends_on=["b"])

    result = dag.run()
    assert result["status"] == "completed"
    assert dag.status == RunStatus.COMPLETED
    assert execution_log == ["a", "b", "c"]
    assert result["failed_step"] is None


def test_first_failure_halts_the_run():
    """A failed step aborts the run; every later step stays pending."""
    ran = []

    def failing_task(ctx):
        raise RuntimeError("Intentional failure")

    def independent(ctx):
        ran.append("independent")

    def downstream(ctx):
        pytest.fail("Should not have run")

    dag = DAG("test_failure")
    dag.add_task("fail", failing_task)
    dag.add_task("independent", independent)
    dag.add_task("after", downstream, depends_on=["fail"])

    result = dag.run()
    assert result["status"] == "aborted"
    assert result["failed_step"] == "fail"
    assert result["error"] == "Intentional failure"
    assert dag.tasks["fail"].status == StepStatus.FAILED
    assert dag.tasks["independent"].status == StepStatus.PENDING
    assert dag.tasks["after"].status == StepStatus.PENDING
    assert result["tasks"]["after"] == {"status": "pending"}
    assert ran == []


def test_context_holds_only_dependency_results():
    """A step sees the initial context plus its own dependencies' results."""
    seen = {}

    def record(ctx):
        seen.update(ctx)

    dag = DAG("test_context")
    dag.add_task("a", lambda ctx: {"a_val": 1})
    dag.add_task("b", lambda ctx: {"b_val": 2})
    dag.add_task("c", record, depends_on=["b"])

    dag.run(initial_context={"db": "session"})
    assert seen == {"db": "session", "b_val": 2}


def test_raise_for_status():
    dag = DAG("test_raise")
    dag.add_task("boom", lambda ctx: 1 / 0)
    dag.run()

    with pytest.raises(MigrationStepFailed) as excinfo:
        dag.raise_for_status()
    assert excinfo.value.step == "boom"


def test_cycle_detection():
    """DAG rejects circular dependencies."""
    dag = DAG("test_cycle")
    dag.add_task("a", lambda ctx: None, depends_on=["b"])
    dag.add_task("b", lambda ctx: None, depends_on=["a"])

    with pytest.raises(ValueError, match="Cycle detected"):
        dag.run()


def test_unknown_dependency():
    dag = DAG("test_unknown")
    dag.add_task("a", lambda ctx: None, depends_on=["missing"])
    with pytest.raises(ValueError, match="unknown task"):
        dag.run()


def test_duplicate_task_name():
    dag = DAG("test_duplicate")
    dag.add_task("a", lambda ctx: None)
    with pytest.raises(ValueError, match="Duplicate"):
        dag.add_task("a", lambda ctx: None)


def test_diamond_dag():
    """Diamond shape: A -> B, A -> C, B+C -> D."""
    dag = DAG("diamond")
    dag.add_task("a", lambda ctx: {"val": 1})
    dag.add_task("b", lambda ctx: {"b_val": 10}, depends_on=["a"])
    dag.add_task("c", lambda ctx: {"c_val": 20}, depends_on=["a"])
    dag.add_task(
        "d",
        lambda ctx: {"total": ctx["b_val"] + ctx["c_val"]},
        depends_on=["b", "c"],
    )

    result = dag.run()
    assert result["status"] == "completed"
    assert dag.tasks["d"].result["total"] == 30


def test_to_dict_serialization():
    """DAG can serialize its structure for storage."""
    dag = DAG("serialize_test")
    dag.add_task("x", lambda ctx: None)
    dag.add_task("y", lambda ctx: None, depends_on=["x"])

    d = dag.to_dict()
    assert d["name"] == "serialize_test"
    assert d["tasks"]["y"]["depends_on"] == ["x"]
