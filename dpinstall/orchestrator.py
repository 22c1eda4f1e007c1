"""The resumable step state machine."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from loguru import logger

from .errors import PreconditionMissing, StepDeclined
from .reboot import RebootCoordinator
from .state import InstallState, load_state, record_completion
from .steps import Step, StepContext, StepRegistry
from .util import CmdError

log = logger


class StepStatus(enum.Enum):
    SKIPPED = 'skipped'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass(frozen=True)
class StepOutcome:
    step: Step
    status: StepStatus
    detail: str = ''
    rebooted: bool = False

    @property
    def failed(self) -> bool:
        return self.status is StepStatus.FAILED


@dataclass(frozen=True)
class RunSummary:
    outcomes: tuple[StepOutcome, ...] = ()
    all_done: bool = False

    @property
    def failed(self) -> bool:
        return any(o.failed for o in self.outcomes)

    @property
    def rebooted(self) -> bool:
        return any(o.rebooted for o in self.outcomes)


class Orchestrator:
    """Compute the next pending step, run it, record it, maybe reboot.

    Args:
        registry: ordered steps.
        state_path: file holding the :class:`InstallState`.
        make_context: builds a fresh :class:`StepContext` per step, so each
            step sees the config as it is on disk right now.
        reboot: the reboot coordinator.
    """

    def __init__(
        self,
        registry: StepRegistry,
        state_path: Path,
        make_context: Callable[[], StepContext],
        reboot: RebootCoordinator,
    ) -> None:
        self.registry = registry
        self.state_path = state_path
        self.make_context = make_context
        self.reboot = reboot

    def state(self) -> InstallState:
        return load_state(self.state_path)

    def next_index(self) -> int:
        """Index of the next pending step; ``len(registry)`` when all are done."""
        state = self.state()
        idx = self.registry.resume_index(state.last_completed_step_id)
        if idx == 0 and not state.is_empty:
            log.warning(
                'State references unknown step {!r}; '
                'restarting from the first step',
                state.last_completed_step_id,
            )
        return idx

    def next_step(self) -> Optional[Step]:
        idx = self.next_index()
        return self.registry[idx] if idx < len(self.registry) else None

    def run_step(self, step: Step, *, record: bool = True) -> StepOutcome:
        ctx = self.make_context()
        if not ctx.prompter.confirm(
            f'Installer - {step.id.value}',
            f'{step.title}\n\nDo you want to execute this step?',
        ):
            log.info('User canceled execution of STEP {}.', step.id.value)
            return StepOutcome(step, StepStatus.SKIPPED, 'declined by operator')

        log.info('===== STEP START: {} - {} =====', step.id.value, step.title)
        try:
            rc = step.handler(ctx)
        except (PreconditionMissing, StepDeclined) as ex:
            log.warning('STEP {} skipped: {}', step.id.value, ex)
            ctx.prompter.notify(f'STEP {step.id.value} skipped', str(ex))
            return StepOutcome(step, StepStatus.SKIPPED, str(ex))
        except CmdError as ex:
            return self._failed(ctx, step, ctx.runner.describe_error(ex))
        except Exception as ex:
            log.opt(exception=ex).debug('Unhandled error in {}', step.id.value)
            return self._failed(ctx, step, f'{type(ex).__name__}: {ex}')
        if rc not in (None, 0):
            return self._failed(ctx, step, f'handler returned {rc}')

        log.info('===== STEP DONE: {} - {} =====', step.id.value, step.title)
        if record:
            record_completion(self.state_path, step.id.value)
        else:
            log.info(
                'STEP {} was run out of order; install state left unchanged.',
                step.id.value,
            )
        try:
            rebooted = self._maybe_reboot(ctx, step)
        except CmdError as ex:
            # The step itself is done and stays recorded.
            return self._failed(
                ctx,
                step,
                'automatic reboot failed: '
                f'{ctx.runner.describe_error(ex)}\n'
                'Reboot the host manually, then re-run the installer.',
            )
        return StepOutcome(step, StepStatus.SUCCEEDED, rebooted=rebooted)

    def _failed(self, ctx: StepContext, step: Step, detail: str) -> StepOutcome:
        log.error(
            '===== STEP FAILED: {} - {} ===== ({})',
            step.id.value,
            step.title,
            detail,
        )
        ctx.prompter.notify(
            f'STEP Failed - {step.id.value}',
            f'An error occurred while executing {step.title}.\n{detail}\n\n'
            'Check the log and re-run the step if necessary.',
        )
        return StepOutcome(step, StepStatus.FAILED, detail)

    def _maybe_reboot(self, ctx: StepContext, step: Step) -> bool:
        simulate = ctx.runner.simulate
        if not self.reboot.should_reboot(step.id, simulate):
            if simulate and step.id in self.reboot.policy:
                log.info(
                    '[DRY-RUN] Auto-reboot after {} will not be performed.',
                    step.id.value,
                )
            return False
        ctx.prompter.notify(
            'Auto Reboot',
            f'{step.title} completed successfully.\n\n'
            'The system will now reboot. '
            'Re-run the installer afterwards to continue.',
        )
        self.reboot.trigger()
        return True

    def run_from(self, index: int) -> RunSummary:
        outcomes: list[StepOutcome] = []
        for idx in range(index, len(self.registry)):
            outcome = self.run_step(self.registry[idx])
            outcomes.append(outcome)
            if outcome.failed or outcome.rebooted:
                break
        done = self.next_index() >= len(self.registry)
        return RunSummary(tuple(outcomes), all_done=done)

    def run_pending(self) -> RunSummary:
        """Auto-continue: confirm once, then run forward from the next step."""
        step = self.next_step()
        if step is None:
            log.info('All steps are already completed.')
            return RunSummary(all_done=True)
        ctx = self.make_context()
        if not ctx.prompter.confirm(
            'Installer - Auto Proceed',
            f'From the current state, the next step is:\n\n{step.title}\n\n'
            'Do you want to execute sequentially from this step?',
        ):
            log.info('User canceled auto proceed.')
            return RunSummary()
        return self.run_from(self.registry.index_of(step.id))

    def run_selected(self, step: Step) -> StepOutcome:
        """Run one step chosen by the operator; only the next step advances state."""
        pending = self.next_step()
        in_order = pending is not None and pending.id == step.id
        return self.run_step(step, record=in_order)
