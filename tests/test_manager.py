import asyncio

import pytest

from nibble.core import Nibble
from nibble.engine.exceptions import CyclicWorkflow, UnknownAdapter, UnknownWorkflow
from nibble.engine.executor import RunStatus
from nibble.services.chain import ContractRole
from nibble.services.cipher import Wallet

OPENAI = {"provider": "OpenAI", "api_key": "sk-test", "model": "gpt-4o-mini"}


class SlowLLM:
    def __init__(self) -> None:
        self.active = 0
        self.peak = 0

    async def invoke(self, config, prompt):
        self.active += 1
        self.peak = max(self.peak, self.active)
        await asyncio.sleep(0.02)
        self.active -= 1
        return prompt


def _single(nibble, name, prompt):
    agent = nibble.add_agent(name=name, llm=OPENAI, system_prompt=prompt)
    workflow = nibble.workflows.create(name)
    node = workflow.add_node(nibble.registry, agent.id)
    return workflow, node


@pytest.mark.asyncio
async def test_dependent_runs_after_success(nibble, llm):
    parent, parent_node = _single(nibble, "parent", "first")
    child, child_node = _single(nibble, "child", "second")
    nibble.workflows.add_dependency(parent.id, child.id)

    result = await nibble.workflows.execute(parent.id)

    assert result.ok
    (dependent,) = result.dependents
    assert dependent.workflow_id == child.id
    assert dependent.ok
    assert dependent.context.has_output(parent_node.id)
    assert dependent.context.has_output(child_node.id)
    assert not result.context.has_output(child_node.id)
    assert llm.prompts == ["first", "second"]


@pytest.mark.asyncio
async def test_dependent_skipped_after_failure(nibble, llm, closed_gate):
    parent, parent_node = _single(nibble, "parent", "first")
    tail = nibble.add_agent(name="tail", llm=OPENAI, system_prompt="tail")
    tail_node = parent.add_node(nibble.registry, tail.id)
    parent.add_link(nibble.registry, parent_node.id, tail_node.id, closed_gate.id)
    child, _ = _single(nibble, "child", "second")
    nibble.workflows.add_dependency(parent.id, child.id)

    result = await nibble.workflows.execute(parent.id)

    assert result.status == RunStatus.GATE_DENIED
    assert result.dependents == []
    assert llm.prompts == ["first"]


def test_dependency_cycles_are_rejected(nibble):
    first, _ = _single(nibble, "first", "a")
    second, _ = _single(nibble, "second", "b")
    third, _ = _single(nibble, "third", "c")
    nibble.workflows.add_dependency(first.id, second.id)
    nibble.workflows.add_dependency(second.id, third.id)

    with pytest.raises(CyclicWorkflow):
        nibble.workflows.add_dependency(third.id, first.id)
    with pytest.raises(CyclicWorkflow):
        nibble.workflows.add_dependency(first.id, first.id)
    with pytest.raises(UnknownWorkflow):
        nibble.workflows.add_dependency(first.id, b"\x00" * 32)

    nibble.workflows.add_dependency(first.id, second.id)
    assert first.dependent_workflow_ids == [second.id]


@pytest.mark.asyncio
async def test_cycle_in_dependent_list_fails_before_any_invocation(nibble, llm):
    first, _ = _single(nibble, "first", "a")
    second, _ = _single(nibble, "second", "b")
    nibble.workflows.add_dependency(first.id, second.id)
    second.dependent_workflow_ids.append(first.id)

    result = await nibble.workflows.execute(first.id)

    assert result.status == RunStatus.FAILED
    assert isinstance(result.error, CyclicWorkflow)
    assert result.dependents == []
    assert llm.prompts == []
    assert nibble.workflows.engine.get_status(result.run_id) == RunStatus.FAILED


@pytest.mark.asyncio
async def test_cycle_further_down_the_chain_is_refused(nibble, llm):
    first, _ = _single(nibble, "first", "a")
    second, _ = _single(nibble, "second", "b")
    third, _ = _single(nibble, "third", "c")
    nibble.workflows.add_dependency(first.id, second.id)
    nibble.workflows.add_dependency(second.id, third.id)
    third.dependent_workflow_ids.append(second.id)

    result = await nibble.workflows.execute(first.id)

    assert result.status == RunStatus.FAILED
    assert isinstance(result.error, CyclicWorkflow)
    assert llm.prompts == []


@pytest.mark.asyncio
async def test_removed_workflow_is_dropped_from_dependents(nibble):
    parent, _ = _single(nibble, "parent", "a")
    child, _ = _single(nibble, "child", "b")
    nibble.workflows.add_dependency(parent.id, child.id)

    await nibble.workflows.remove(child.id)

    assert parent.dependent_workflow_ids == []
    with pytest.raises(UnknownWorkflow):
        nibble.workflows.get(child.id)


@pytest.mark.asyncio
async def test_runs_of_one_workflow_are_serialized(nibble):
    slow = SlowLLM()
    nibble.llm = slow
    workflow, _ = _single(nibble, "slow", "wait")

    results = await asyncio.gather(*(nibble.workflows.execute(workflow.id) for _ in range(3)))

    assert all(result.ok for result in results)
    assert slow.peak == 1


@pytest.mark.asyncio
async def test_serialization_can_be_disabled(nibble):
    slow = SlowLLM()
    nibble.llm = slow
    workflow, _ = _single(nibble, "slow", "wait")

    await asyncio.gather(*(nibble.workflows.execute(workflow.id, serialize=False) for _ in range(3)))

    assert slow.peak == 3


def test_create_requires_a_name(nibble):
    with pytest.raises(ValueError):
        nibble.workflows.create("  ")


def test_workflows_carry_owner_and_ref(nibble):
    workflow, _ = _single(nibble, "owned", "a")
    assert workflow.owner == nibble.owner.principal
    assert workflow.nibble_ref.name == "test-nibble"
    assert nibble.workflows.list() == [workflow]


@pytest.mark.asyncio
async def test_deploy_records_the_contract_set(nibble):
    assert nibble.id is None

    deployment = await nibble.deploy()

    assert nibble.id == deployment.nibble_id
    assert set(deployment.contracts) == set(ContractRole)
    assert nibble.ref().nibble_id == deployment.nibble_id


def test_used_adapters_are_retired_not_deleted(nibble):
    workflow, node = _single(nibble, "keep", "a")
    spare = nibble.add_agent(name="spare", llm=OPENAI)

    assert nibble.remove_adapter(node.adapter_id) is True
    assert nibble.registry.is_retired(node.adapter_id)
    assert nibble.registry.find(node.adapter_id).name == "keep"
    assert node.adapter_id not in [a.id for a in nibble.adapters()]
    workflow.validate(nibble.registry)

    assert nibble.remove_adapter(spare.id) is False
    with pytest.raises(UnknownAdapter):
        nibble.registry.find(spare.id)


def test_nibble_rejects_blank_name(llm, contracts, blob_store, registry_client):
    with pytest.raises(ValueError):
        Nibble(
            "",
            Wallet.generate(),
            llm=llm,
            contracts=contracts,
            blob_store=blob_store,
            registry_client=registry_client,
        )
