"""
Grouped, nonce-windowed execution of a deployment step graph.

Steps form a DAG. The orchestrator layers it into groups of mutually independent steps;
each group reserves one contiguous window of nonces read from the live transaction count,
broadcasts every transaction of the group without waiting in between, then waits for all
receipts before the next group starts.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from l1_deployment.chain import ChainClient, PreparedTransaction, Receipt
from l1_deployment.errors import (
    ConfigurationError,
    DeploymentError,
    DeploymentFailed,
    PartialGroupFailure,
)
from l1_deployment.params import TxOptions
from l1_deployment.registry import AddressRecord, AddressRegistry


class StepState(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class StepAction(ABC):
    """The unit of work behind a step: at most one transaction."""

    @abstractmethod
    def prepare(self) -> Optional[PreparedTransaction]:
        """
        Returns the transaction to send, or None if the step's effect is already on chain.
        Called only once all dependencies are confirmed.
        """
        raise NotImplementedError

    @abstractmethod
    def complete(self, receipt: Optional[Receipt]) -> List[AddressRecord]:
        """Derives the step's address records; ``receipt`` is None when nothing was sent."""
        raise NotImplementedError

    def resume(self, receipt: Receipt) -> List[AddressRecord]:
        """Completes a transaction broadcast by an earlier, interrupted run."""
        return self.complete(receipt)

    def check_recorded(self) -> None:
        """Raises if the recorded outputs no longer match what the step would produce."""


class DeploymentStep(NamedTuple):
    name: str
    action: StepAction
    dependencies: FrozenSet[str] = frozenset()
    # registry names this step produces; all present means the step is already done
    outputs: Tuple[str, ...] = ()


class NonceWindow:
    """Contiguous nonces reserved for one group. Never reused once handed out."""

    def __init__(self, start: int, size: int):
        if size < 0:
            raise ValueError("Nonce window size must not be negative")
        self.start = start
        self.size = size
        self._offsets: Dict[str, int] = OrderedDict()

    def __repr__(self):
        return f"<NonceWindow [{self.start}, {self.end})>"

    @property
    def end(self) -> int:
        return self.start + self.size

    def assign(self, name: str) -> int:
        if name in self._offsets:
            raise ValueError(f"{name} already holds nonce {self.start + self._offsets[name]}")
        offset = len(self._offsets)
        if offset >= self.size:
            raise ValueError(f"Nonce window {self} is exhausted")
        self._offsets[name] = offset
        return self.start + offset

    @property
    def assignments(self) -> Dict[str, int]:
        return {name: self.start + offset for name, offset in self._offsets.items()}


class _Submission(NamedTuple):
    step: DeploymentStep
    nonce: Optional[int]
    tx_hash: str
    # broadcast by an earlier run
    resumed: bool = False


def layer_steps(
    steps: Sequence[DeploymentStep], satisfied: Iterable[str] = ()
) -> List[List[DeploymentStep]]:
    """
    Topologically layers ``steps``: every group holds the steps whose dependencies are all
    in earlier groups (or ``satisfied``), in declaration order.

    Raises ConfigurationError on duplicate names, unknown dependencies or cycles.
    """
    by_name: Dict[str, DeploymentStep] = OrderedDict()
    for step in steps:
        if step.name in by_name:
            raise ConfigurationError(f"Duplicate deployment step '{step.name}'.")
        by_name[step.name] = step

    for step in steps:
        for dependency in step.dependencies:
            if dependency not in by_name:
                raise ConfigurationError(
                    f"Step '{step.name}' depends on unknown step '{dependency}'."
                )

    done = set(satisfied) & set(by_name)
    pending = [step for step in steps if step.name not in done]
    groups = list()
    while pending:
        group = [step for step in pending if step.dependencies <= done]
        if not group:
            cycle = ", ".join(step.name for step in pending)
            raise ConfigurationError(f"Dependency cycle detected among steps: {cycle}")
        groups.append(group)
        done.update(step.name for step in group)
        pending = [step for step in pending if step.name not in done]
    return groups


class DeploymentOrchestrator:
    """
    Runs deployment steps for a single signer.

    Resumable: a step whose outputs are all in the registry starts confirmed, every
    broadcast transaction is persisted as a pending marker before its receipt is awaited,
    and every confirmed step is persisted before the next group begins.
    """

    def __init__(
        self,
        client: ChainClient,
        registry: AddressRegistry,
        steps: Sequence[DeploymentStep],
        tx_options: TxOptions = TxOptions(),
    ):
        self.client = client
        self.registry = registry
        self.steps = list(steps)
        self.tx_options = tx_options
        self.states: Dict[str, StepState] = OrderedDict(
            (step.name, StepState.PENDING) for step in self.steps
        )
        self.windows: List[NonceWindow] = list()
        self._gas_price: Optional[int] = None

        # fail before anything is sent
        layer_steps(self.steps)

    def _is_recorded(self, step: DeploymentStep) -> bool:
        return bool(step.outputs) and all(name in self.registry for name in step.outputs)

    def plan(self) -> List[List[DeploymentStep]]:
        """
        Groups of the steps still to run, marking already-recorded steps confirmed.
        A recorded step whose inputs changed since it was recorded fails the plan.
        """
        for step in self.steps:
            if self.states[step.name] == StepState.PENDING and self._is_recorded(step):
                step.action.check_recorded()
                self.states[step.name] = StepState.CONFIRMED
        confirmed = [name for name, state in self.states.items() if state == StepState.CONFIRMED]
        return layer_steps(self.steps, satisfied=confirmed)

    @property
    def gas_price(self) -> int:
        if self.tx_options.gas_price is not None:
            return self.tx_options.gas_price
        if self._gas_price is None:
            self._gas_price = self.client.get_gas_price()
        return self._gas_price

    def _reserve_window(self, size: int) -> NonceWindow:
        if not self.windows and self.tx_options.nonce is not None:
            start = self.tx_options.nonce
        else:
            start = self.client.get_transaction_count(self.client.address)
        window = NonceWindow(start=start, size=size)
        self.windows.append(window)
        return window

    def _commit(
        self, step: DeploymentStep, receipt: Optional[Receipt], resumed: bool = False
    ) -> None:
        if resumed:
            records = step.action.resume(receipt)
        else:
            records = step.action.complete(receipt)
        for record in records:
            self.registry.record(record)
        self.registry.clear_pending(step.name)
        self.registry.save()
        self.states[step.name] = StepState.CONFIRMED

    def _fail(self, step: DeploymentStep, error: Exception, failures: Dict) -> None:
        self.states[step.name] = StepState.FAILED
        failures[step.name] = error
        print(f"(!) {step.name} failed: {error}")

    def _broadcast(
        self, prepared: Sequence[Tuple[DeploymentStep, PreparedTransaction]], failures: Dict
    ) -> List[_Submission]:
        window = self._reserve_window(size=len(prepared))
        submissions: List[_Submission] = list()
        for step, tx in prepared:
            nonce = window.assign(step.name)
            try:
                tx_hash = self.client.send_transaction(
                    to=tx.to,
                    data=tx.data,
                    value=tx.value,
                    nonce=nonce,
                    gas_limit=tx.gas_limit or self.tx_options.gas_limit,
                    gas_price=self.gas_price,
                )
            except Exception as e:
                # later nonces of the window would sit behind a gap forever
                error = DeploymentFailed(step.name, f"rejected on broadcast: {e}")
                error.__cause__ = e
                self._fail(step, error, failures)
                break
            # persisted before any receipt is awaited
            self.registry.mark_pending(step.name, tx_hash, to=tx.to)
            self.registry.save()
            self.states[step.name] = StepState.SUBMITTED
            submissions.append(_Submission(step=step, nonce=nonce, tx_hash=tx_hash))
            print(f"(i) {step.name} submitted with nonce {nonce}: {tx_hash}")
        return submissions

    def run_group(self, index: int, group: Sequence[DeploymentStep]) -> None:
        print(f"\n(i) Group {index}: {', '.join(step.name for step in group)}")

        # a step broadcast by an interrupted run is only waited on, never sent again
        submissions: List[_Submission] = list()
        prepared: List[Tuple[DeploymentStep, PreparedTransaction]] = list()
        for step in group:
            tx_hash = self.registry.pending_tx(step.name)
            if tx_hash is not None:
                print(f"(i) {step.name} was already broadcast: {tx_hash}")
                self.states[step.name] = StepState.SUBMITTED
                submissions.append(
                    _Submission(step=step, nonce=None, tx_hash=tx_hash, resumed=True)
                )
                continue
            # only steps that need a transaction take a nonce
            tx = step.action.prepare()
            if tx is None:
                self._commit(step, receipt=None)
            else:
                prepared.append((step, tx))

        failures: Dict[str, Exception] = OrderedDict()
        if prepared:
            submissions.extend(self._broadcast(prepared, failures))

        # every submitted sibling is allowed to land, its nonce is spent either way
        for submission in submissions:
            step = submission.step
            receipt = self.client.wait(submission.tx_hash)
            if not receipt.succeeded:
                reason = self.client.get_revert_reason(submission.tx_hash)
                self.registry.clear_pending(step.name)
                self.registry.save()
                self._fail(step, DeploymentFailed(step.name, reason, submission.tx_hash), failures)
                continue
            try:
                self._commit(step, receipt, resumed=submission.resumed)
            except DeploymentError as e:
                # the marker stays; the transaction landed and must not be sent again
                self._fail(step, e, failures)
                continue
            print(f"(i) {step.name} confirmed, gas used: {receipt.gas_used}")

        if not failures:
            return

        confirmed = [step.name for step in group if self.states[step.name] == StepState.CONFIRMED]
        if len(failures) == 1 and not confirmed:
            raise next(iter(failures.values()))
        raise PartialGroupFailure(group=index, failures=failures, confirmed=confirmed)

    def run(self) -> Dict[str, StepState]:
        """Runs every pending group in order. Stops at the first failing group."""
        groups = self.plan()
        for index, group in enumerate(groups):
            self.run_group(index, group)
        return dict(self.states)

    def failed_steps(self) -> List[str]:
        return [name for name, state in self.states.items() if state == StepState.FAILED]

    def blocked_steps(self) -> List[str]:
        return [name for name, state in self.states.items() if state == StepState.PENDING]