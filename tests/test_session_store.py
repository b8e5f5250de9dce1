from session_store import WizardSessionStore
from supply_state import SupplyTask
from supply_wizard_store import (
    DropOffSelected, SupplyWizardStore, TaskLaunched, TaskLoaded, TaskRemoved, WizardStage, apply_transition,
    WizardState,
)


def test_save_and_hydrate_chat_with_contexts(tmp_path):
    sessions = WizardSessionStore(tmp_path / "sessions.json")
    state = apply_transition(WizardState("7"), TaskLoaded(SupplyTask("t1", last_day="2030-01-10")))
    state = apply_transition(state, DropOffSelected(10, "ПВЗ"))
    sessions.save_chat_state("7", state)

    snapshot = sessions.load_chat_state("7")
    assert set(snapshot["task_contexts"]) == {"t1"}
    store = SupplyWizardStore()
    restored = store.hydrate("7", snapshot)
    assert restored.stage == WizardStage.CLUSTER_PROMPT
    assert restored.active_context().selected_drop_off_id == 10
    assert sessions.load_task_state("7", "t1").task.last_day == "2030-01-10"


def test_removed_contexts_are_pruned(tmp_path):
    sessions = WizardSessionStore(tmp_path / "sessions.json")
    state = apply_transition(WizardState("7"), TaskLoaded(SupplyTask("t1")))
    state = apply_transition(state, TaskLaunched("t1"))
    sessions.save_chat_state("7", state)
    other = apply_transition(WizardState("8"), TaskLoaded(SupplyTask("t9")))
    sessions.save_chat_state("8", other)

    sessions.save_chat_state("7", apply_transition(state, TaskRemoved("t1")))
    assert sessions.load_task_state("7", "t1") is None
    assert sessions.load_task_state("8", "t9") is not None
    assert sessions.chat_ids() == ["7", "8"]


def test_delete_chat_state(tmp_path):
    sessions = WizardSessionStore(tmp_path / "sessions.json")
    sessions.save_chat_state("7", apply_transition(WizardState("7"), TaskLoaded(SupplyTask("t1"))))
    assert sessions.delete_chat_state("7") == 2
    assert sessions.load_chat_state("7") is None
    assert sessions.delete_task_state("7", "t1") is False
