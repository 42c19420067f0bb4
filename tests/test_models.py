"""Tests for imagepuppet.models module."""

from __future__ import annotations

from pathlib import Path

import pytest

from imagepuppet.exceptions import ConfigurationError, PuppetError
from imagepuppet.models import (
    Copy,
    Mount,
    Press,
    Run,
    Specification,
    Stage,
    StageKind,
    Type,
    VMHandle,
    VMState,
    Wait,
    WaitFor,
    describe_action,
)


class TestStageOrdering:
    def test_ordered_stages_ignores_declaration_order(self, make_spec):
        spec = make_spec(
            configure=[Run("true")],
            install=[Wait(1)],
            init=[Wait(5)],
        )
        kinds = [stage.kind for stage in spec.ordered_stages()]
        assert kinds == [StageKind.INIT, StageKind.INSTALL, StageKind.CONFIGURE, StageKind.PACK]

    def test_missing_stages_are_empty(self, make_spec):
        spec = make_spec(install=[Wait(1)])
        assert spec.stage(StageKind.CONFIGURE).actions == ()
        assert spec.stage(StageKind.INSTALL).actions == (Wait(1),)


class TestValidate:
    def test_valid_spec_passes(self, make_spec):
        spec = make_spec(
            install=[Wait(1), Press("enter"), Type("root\n"), WaitFor("login:", 60), Mount(None)],
            configure=[Run("uname -a"), Copy(Path("/tmp/x"), "/root/x")],
        )
        spec.validate()

    def test_run_not_allowed_in_install(self, make_spec):
        spec = make_spec(install=[Wait(1), Run("reboot")])
        with pytest.raises(ConfigurationError) as exc:
            spec.validate()
        assert exc.value.stage == "install"
        assert exc.value.action_index == 1

    def test_pack_stage_takes_no_actions(self, make_spec):
        spec = make_spec(pack=[Wait(1)])
        with pytest.raises(ConfigurationError, match="not allowed in the pack stage"):
            spec.validate()

    def test_init_only_allows_wait(self, make_spec):
        spec = make_spec(init=[Press("enter")])
        with pytest.raises(ConfigurationError):
            spec.validate()

    def test_duplicate_stage_rejected(self):
        spec = Specification(
            name="dup",
            stages=(Stage(StageKind.INSTALL), Stage(StageKind.INSTALL)),
        )
        with pytest.raises(ConfigurationError, match="more than once"):
            spec.validate()

    def test_remote_actions_need_credentials(self, make_spec):
        spec = make_spec(with_login=False, configure=[Run("true")])
        with pytest.raises(ConfigurationError, match="credentials"):
            spec.validate()

    def test_unknown_key_rejected(self, make_spec):
        spec = make_spec(install=[Press("hyper")])
        with pytest.raises(ConfigurationError, match="Unknown key"):
            spec.validate()

    def test_non_modifier_used_as_modifier(self, make_spec):
        spec = make_spec(install=[Press("c", modifiers=("enter",))])
        with pytest.raises(ConfigurationError, match="modifier"):
            spec.validate()

    def test_zero_repeat_rejected(self, make_spec):
        spec = make_spec(install=[Press("enter", repeat=0)])
        with pytest.raises(ConfigurationError):
            spec.validate()

    def test_unmappable_text_rejected(self, make_spec):
        spec = make_spec(install=[Type("snow ☃")])
        with pytest.raises(ConfigurationError, match="No key mapping"):
            spec.validate()

    def test_wait_for_needs_positive_timeout(self, make_spec):
        spec = make_spec(install=[WaitFor("login", 0)])
        with pytest.raises(ConfigurationError, match="positive"):
            spec.validate()


class TestVMHandle:
    def _handle(self, tmp_path):
        return VMHandle(build_id="b1", name="vm", provider_kind="fake", workdir=tmp_path)

    def test_happy_path_transitions(self, tmp_path):
        handle = self._handle(tmp_path)
        for state in (VMState.BOOTING, VMState.RUNNING, VMState.SHUTTING_DOWN, VMState.STOPPED):
            handle.transition(state)
        assert handle.state == VMState.STOPPED
        assert handle.terminal

    def test_any_live_state_can_fail(self, tmp_path):
        handle = self._handle(tmp_path)
        handle.transition(VMState.BOOTING)
        handle.transition(VMState.FAILED)
        assert handle.terminal

    def test_skipping_states_is_illegal(self, tmp_path):
        handle = self._handle(tmp_path)
        with pytest.raises(PuppetError, match="created -> running"):
            handle.transition(VMState.RUNNING)

    def test_terminal_state_is_final(self, tmp_path):
        handle = self._handle(tmp_path)
        handle.transition(VMState.FAILED)
        with pytest.raises(PuppetError):
            handle.transition(VMState.BOOTING)


class TestDescribeAction:
    def test_description_wins(self):
        assert describe_action(Wait(3, description="let GRUB settle")) == "let GRUB settle"

    def test_press_combo(self):
        assert describe_action(Press("delete", modifiers=("ctrl", "alt"))) == "press ctrl+alt+delete"

    def test_press_repeat(self):
        assert describe_action(Press("down", repeat=3)) == "press down x3"

    def test_mount_eject(self):
        assert describe_action(Mount(None)) == "eject media"

    def test_type_hides_text(self):
        assert describe_action(Type("hunter2")) == "type 7 characters"
