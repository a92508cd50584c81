"""Task engine: runs one phase of a migration per invocation.

Every call to :meth:`Task.run` starts from the persisted
:class:`~vmimport.pipeline.state.WorkflowStatus`, executes the handler of
the current phase and leaves the status pointing at the phase to run next,
together with the delay after which the driver should call again. Nothing
is kept in memory between calls and the engine never sleeps.

Phase outcomes:
    advance  -- the phase finished; move to the next one
    pending  -- waiting on the platform (e.g. a disk copy); poll again later
    failed   -- unrecoverable; errors are recorded and the workflow switches
                to the failure itinerary, whose phases compensate
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from vmimport.cluster import (
    DATA_VOLUME,
    IMPORT_API_VERSION,
    IMPORT_KIND,
    KUBEVIRT_API_VERSION,
    POD,
    VIRTUAL_MACHINE,
    AlreadyExistsError,
    ClusterError,
    NotFoundError,
    TargetCluster,
    metadata,
    set_controller_reference,
    set_owner_reference,
    set_tracker_label,
)
from vmimport.config import EngineSettings, MigrationRequest
from vmimport.errors import (
    ItineraryError,
    PhaseFailedError,
    TemplateNotFoundError,
    TransientError,
)
from vmimport.pipeline import itinerary as phases
from vmimport.pipeline.itinerary import (
    COLD_ITINERARY,
    FAILED_ITINERARY,
    WARM_ITINERARY,
    Itinerary,
)
from vmimport.pipeline.state import SOURCE_VM_INITIAL_STATE, WorkflowStatus
from vmimport.providers.base import Mapper, Provider, TransferDescriptor, VMStatus
from vmimport.utils.logging import get_logger

logger = get_logger(__name__)

NO_REQUEUE = 0.0

# DataVolume phases reported by the importer
DV_SUCCEEDED = "Succeeded"
DV_PENDING = "Pending"
DV_FAILED = "Failed"
DV_IMPORT_IN_PROGRESS = "ImportInProgress"

IMPORTER_POD_PREFIX = "importer-"


class Outcome(str, Enum):
    ADVANCE = "advance"
    PENDING = "pending"
    FAILED = "failed"
    TERMINAL = "terminal"


@dataclass
class RunResult:
    """What one invocation did, handed back to the driver."""
    outcome: Outcome
    phase: str
    itinerary: str
    requeue: float
    error: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.phase == phases.COMPLETED and self.requeue == NO_REQUEUE


class GuestConverter:
    """Extension point for in-guest conversion after the disks are copied.

    ``convert`` returns ``(done, error)``. The default has no conversion
    backend and never reports done.
    """

    def convert(self, request: MigrationRequest, status: WorkflowStatus) -> tuple[bool, Optional[str]]:
        return False, None


def importer_pod_name(dv_name: str) -> str:
    return f"{IMPORTER_POD_PREFIX}{dv_name}"


def import_progress(data_volume: dict) -> float:
    """Parse a DataVolume's ``status.progress`` (e.g. ``"45.5%"``)."""
    progress = str(data_volume.get("status", {}).get("progress", ""))
    try:
        return float(progress.rstrip("%"))
    except ValueError:
        return 0.0


def pod_restart_count(pod: dict) -> int:
    statuses = pod.get("status", {}).get("containerStatuses") or []
    return max((cs.get("restartCount", 0) for cs in statuses), default=0)


def pod_failed(pod: dict) -> bool:
    statuses = pod.get("status", {}).get("containerStatuses") or []
    if not statuses:
        return False
    terminated = statuses[0].get("lastState", {}).get("terminated") or {}
    return terminated.get("exitCode", 0) > 0


class Task:
    """Executes a single phase of one migration.

    Args:
        request: The migration request owning every created object
        status: Persisted progress; mutated in place
        provider: Source hypervisor capability
        cluster: Target cluster object store
        mapper: Spec translation capability; created from the provider on
            first use when omitted
        settings: Requeue delays and policy toggles
        converter: Guest conversion extension point
    """

    def __init__(
        self,
        request: MigrationRequest,
        status: WorkflowStatus,
        provider: Provider,
        cluster: TargetCluster,
        mapper: Optional[Mapper] = None,
        settings: Optional[EngineSettings] = None,
        converter: Optional[GuestConverter] = None,
    ):
        self.request = request
        self.status = status
        self.provider = provider
        self.cluster = cluster
        self._mapper = mapper
        self.settings = settings or EngineSettings()
        self.converter = converter or GuestConverter()
        self.requeue = self.settings.fast_requeue
        self.itinerary: Itinerary = COLD_ITINERARY
        self._errors: list[str] = []

        self._handlers: dict[str, Callable[[], Outcome]] = {
            phases.CREATED: self._pass_through,
            phases.STARTED: self._pass_through,
            phases.PREPARE: self._prepare,
            phases.POWER_OFF_SOURCE: self._power_off_source,
            phases.CREATE_VM: self._create_vm,
            phases.CREATE_DATA_VOLUMES: self._create_data_volumes,
            phases.IMPORT_DISKS: self._import_disks,
            phases.CONVERT_GUEST: self._convert_guest,
            phases.CLEAN_UP: self._clean_up,
            phases.IMPORT_FAILED: self._pass_through,
            phases.RESTORE_INITIAL_VM_STATE: self._restore_initial_vm_state,
            phases.CLEAN_UP_AFTER_FAILURE: self._clean_up_after_failure,
        }

    @property
    def mapper(self) -> Mapper:
        if self._mapper is None:
            self._mapper = self.provider.create_mapper()
        return self._mapper

    @property
    def namespace(self) -> str:
        return self.request.namespace

    # ─── Engine ──────────────────────────────────────────────────────

    def run(self) -> RunResult:
        """Execute the current phase and decide what comes next."""
        logger.info(f"[RUN] {self.request.key} phase={self.status.phase or '-'}")
        self._init()
        phase = self.status.phase

        if phase == phases.COMPLETED:
            self.requeue = NO_REQUEUE
            logger.info(f"[COMPLETED] {self.request.key}")
            return self._result(Outcome.TERMINAL)

        handler = self._handlers.get(phase)
        if handler is None or phase not in self.itinerary:
            return self._corrupted(f"Phase '{phase}' is not runnable in itinerary '{self.itinerary.name}'")

        try:
            outcome = handler()
        except TransientError as e:
            logger.info(f"Phase {phase} waiting: {e}")
            self.requeue = self.settings.poll_requeue
            return self._result(Outcome.PENDING)
        except PhaseFailedError as e:
            return self._phase_error(phase, e.messages)
        except Exception as e:
            return self._phase_error(phase, [f"{phase} failed: {e}"])

        if outcome is Outcome.PENDING:
            self.requeue = self.settings.poll_requeue
            return self._result(Outcome.PENDING)
        return self._advance(phase)

    def _init(self) -> None:
        self.requeue = self.settings.fast_requeue
        if self.status.failed:
            self.itinerary = FAILED_ITINERARY
        elif self.request.warm:
            self.itinerary = WARM_ITINERARY
        else:
            self.itinerary = COLD_ITINERARY

        if self.status.itinerary != self.itinerary.name:
            if self.status.itinerary:
                logger.info(
                    f"Switching {self.request.key} from itinerary "
                    f"'{self.status.itinerary}' to '{self.itinerary.name}'"
                )
            self.status.itinerary = self.itinerary.name
            self.status.phase = self.itinerary.first

    def _advance(self, phase: str) -> RunResult:
        try:
            next_phase, done = self.itinerary.next(phase)
        except ItineraryError as e:
            return self._corrupted(str(e))
        self.status.phase = phases.COMPLETED if done else next_phase
        if self.status.phase == phases.COMPLETED:
            self.requeue = NO_REQUEUE
        logger.info(f"[green]✓ {self.request.key}: {phase} → {self.status.phase}[/green]")
        return self._result(Outcome.ADVANCE)

    def _phase_error(self, phase: str, messages: list[str]) -> RunResult:
        self.status.add_errors(messages)
        self._errors.extend(messages)
        if self.itinerary is FAILED_ITINERARY:
            # compensation is best-effort; keep going towards Completed
            logger.error(f"[red]✗ {phase} failed during compensation: {'; '.join(messages)}[/red]")
            return self._advance(phase)
        self._fail(phase, messages)
        return self._result(Outcome.FAILED)

    def _fail(self, phase: str, messages: list[str]) -> None:
        logger.error(f"[red]✗ Phase {phase} failed: {'; '.join(messages)}[/red]")
        self.status.mark_failed()
        self.itinerary = FAILED_ITINERARY
        self.status.itinerary = FAILED_ITINERARY.name
        self.status.phase = FAILED_ITINERARY.first
        self.requeue = self.settings.fast_requeue

    def _corrupted(self, reason: str) -> RunResult:
        logger.error(f"Abandoning {self.request.key}: {reason}")
        self.status.phase = phases.COMPLETED
        self.requeue = NO_REQUEUE
        return self._result(Outcome.TERMINAL)

    def _result(self, outcome: Outcome) -> RunResult:
        return RunResult(
            outcome=outcome,
            phase=self.status.phase,
            itinerary=self.status.itinerary,
            requeue=self.requeue,
            error="; ".join(self._errors) or None,
        )

    def _record(self, message: str) -> None:
        """Log a non-blocking error without changing the itinerary."""
        self.status.add_errors([message])
        self._errors.append(message)

    # ─── Phase implementations ───────────────────────────────────────

    def _pass_through(self) -> Outcome:
        return Outcome.ADVANCE

    def _remember_initial_state(self) -> None:
        if self.status.get_annotation(SOURCE_VM_INITIAL_STATE) is None:
            vm_status = VMStatus(self.provider.get_vm_status())
            self.status.set_annotation(SOURCE_VM_INITIAL_STATE, vm_status.value)
            logger.info(f"Source VM initial state: {vm_status.value}")

    def _prepare(self) -> Outcome:
        # warm imports skip PowerOffSource, so their source state is stored here
        if self.request.warm:
            self._remember_initial_state()
        return Outcome.ADVANCE

    def _power_off_source(self) -> Outcome:
        """Remember the source power state, then stop the source VM."""
        self._remember_initial_state()
        self.provider.stop_vm()
        return Outcome.ADVANCE

    def _create_vm(self) -> Outcome:
        target_name = self.mapper.resolve_vm_name(self.request.target_vm_name)

        try:
            template = self.provider.find_template()
        except TemplateNotFoundError as e:
            vm_spec = self._empty_vm_or_fail(
                target_name, f"No matching template was found for the source VM: {e}"
            )
        else:
            template_name = template.get("metadata", {}).get("name", "")
            logger.info(f"A template was found for the source VM: {template_name}")
            try:
                vm_spec = self.provider.process_template(template, target_name, self.namespace)
            except Exception as e:
                vm_spec = self._empty_vm_or_fail(target_name, f"Failed to process the VM template: {e}")
            generated = vm_spec.get("metadata", {}).get("name")
            if generated and target_name is None:
                target_name = generated

        try:
            vm_spec = self.mapper.map_vm(target_name, vm_spec)
        except Exception as e:
            raise PhaseFailedError(f"Mapping VM failed: {e}") from e

        meta = metadata(vm_spec)
        name = meta.get("name") or target_name
        if not name:
            raise PhaseFailedError("Unable to resolve a name for the target VM")
        meta["name"] = name
        meta["namespace"] = self.namespace
        vm_spec.setdefault("apiVersion", KUBEVIRT_API_VERSION)
        vm_spec.setdefault("kind", VIRTUAL_MACHINE)
        set_tracker_label(vm_spec, self.request.name, self.request.namespace)
        set_controller_reference(
            vm_spec, IMPORT_API_VERSION, IMPORT_KIND, self.request.name, self.request.uid
        )

        try:
            self.cluster.create(vm_spec)
            logger.info(f"Created virtual machine {self.namespace}/{name}")
        except AlreadyExistsError:
            logger.info(f"Virtual machine {self.namespace}/{name} already exists")
        except ClusterError as e:
            raise PhaseFailedError(f"Creating virtual machine {self.namespace}/{name} failed: {e}") from e

        self.status.target_vm_name = name
        return Outcome.ADVANCE

    def _empty_vm_or_fail(self, target_name: Optional[str], reason: str) -> dict:
        if not self.settings.import_without_template:
            logger.info(f"{reason}. Failing.")
            raise PhaseFailedError(reason)
        if target_name is None:
            raise PhaseFailedError(f"{reason}; no target name to build an empty VM with")
        logger.info(f"{reason}. Using empty VM definition.")
        return self.mapper.create_empty_vm(target_name)

    def _target_vm_name(self) -> str:
        if not self.status.target_vm_name:
            raise PhaseFailedError("Target VM name was never recorded")
        return self.status.target_vm_name

    def _create_data_volumes(self) -> Outcome:
        """Create one DataVolume per required disk transfer and attach it."""
        vm_name = self._target_vm_name()
        try:
            vm = self.cluster.get(VIRTUAL_MACHINE, self.namespace, vm_name)
        except NotFoundError as e:
            raise TransientError(f"target VM not visible yet: {e}") from e

        transfers = self.mapper.map_data_volumes(vm_name)
        for dv_name, transfer in sorted(transfers.items()):
            try:
                self.cluster.get(DATA_VOLUME, self.namespace, dv_name)
            except NotFoundError:
                if not self.provider.validate_disk_status(transfer.disk_id):
                    raise PhaseFailedError(
                        f"Disk {transfer.disk_id} for data volume {self.namespace}/{dv_name} "
                        f"is not in a transferable state"
                    )
                self._create_data_volume(dv_name, transfer, vm)
            self.mapper.map_disk(vm, transfer)

        self.cluster.update(vm)
        return Outcome.ADVANCE

    def _create_data_volume(self, dv_name: str, transfer: TransferDescriptor, vm: dict) -> None:
        data_volume = transfer.to_manifest()
        meta = metadata(data_volume)
        meta["name"] = dv_name
        meta["namespace"] = self.namespace
        set_controller_reference(
            data_volume, IMPORT_API_VERSION, IMPORT_KIND, self.request.name, self.request.uid
        )
        vm_meta = vm.get("metadata", {})
        set_owner_reference(
            data_volume, KUBEVIRT_API_VERSION, VIRTUAL_MACHINE, vm_meta.get("name", ""), vm_meta.get("uid", "")
        )
        set_tracker_label(data_volume, self.request.name, self.request.namespace)

        try:
            self.cluster.create(data_volume)
            logger.info(f"Created data volume {self.namespace}/{dv_name}")
        except AlreadyExistsError:
            logger.info(f"Data volume {self.namespace}/{dv_name} already exists")
        except ClusterError as e:
            raise PhaseFailedError(f"Data volume {self.namespace}/{dv_name} creation failed: {e}") from e

    def _import_disks(self) -> Outcome:
        """Poll every transfer; done when all of them succeeded."""
        transfers = self.mapper.map_data_volumes(self._target_vm_name())
        succeeded = 0
        failures: list[str] = []

        for dv_name in sorted(transfers):
            try:
                data_volume = self.cluster.get(DATA_VOLUME, self.namespace, dv_name)
            except NotFoundError:
                logger.info(f"Data volume {self.namespace}/{dv_name} not visible yet")
                continue

            dv_phase = data_volume.get("status", {}).get("phase", "")
            if dv_phase == DV_SUCCEEDED:
                succeeded += 1
            elif dv_phase == DV_FAILED:
                failures.append(f"Data volume {self.namespace}/{dv_name} is in Failed phase")
            elif dv_phase == DV_PENDING or not dv_phase:
                logger.debug(f"Data volume {self.namespace}/{dv_name} is pending")
            else:
                failure = self._check_importer_pod(dv_name)
                if failure:
                    failures.append(failure)

            self.status.progress[dv_name] = import_progress(data_volume)

        if failures:
            raise PhaseFailedError(failures)
        if succeeded == len(transfers):
            return Outcome.ADVANCE
        logger.info(f"Imported {succeeded}/{len(transfers)} disks of {self.request.key}")
        return Outcome.PENDING

    def _check_importer_pod(self, dv_name: str) -> Optional[str]:
        pod_name = importer_pod_name(dv_name)
        try:
            pod = self.cluster.get(POD, self.namespace, pod_name)
        except NotFoundError:
            # not scheduled yet
            return None

        if pod_failed(pod):
            logger.warning(f"Importer pod {self.namespace}/{pod_name} terminated with an error")
        restarts = pod_restart_count(pod)
        tolerance = self.settings.importer_restart_tolerance
        if restarts > tolerance:
            return (
                f"Importer pod {self.namespace}/{pod_name} CrashLoopBackOff restart limit exceeded "
                f"({restarts} restarts, tolerance {tolerance})"
            )
        return None

    def _convert_guest(self) -> Outcome:
        done, error = self.converter.convert(self.request, self.status)
        if error:
            raise PhaseFailedError(f"Guest conversion failed: {error}")
        return Outcome.ADVANCE if done else Outcome.PENDING

    def _clean_up(self) -> Outcome:
        try:
            self.provider.clean_up(failed=False)
        except Exception as e:
            self._record(str(e))
            logger.warning(f"Clean-up of {self.request.key} incomplete: {e}")
        return Outcome.ADVANCE

    def _restore_initial_vm_state(self) -> Outcome:
        initial_state = self.status.get_annotation(SOURCE_VM_INITIAL_STATE)
        if initial_state is None:
            raise PhaseFailedError(
                f"VM didn't have initial state stored in '{SOURCE_VM_INITIAL_STATE}' annotation"
            )
        if initial_state == VMStatus.UP.value:
            logger.info("Restarting source VM")
            self.provider.start_vm()
        return Outcome.ADVANCE

    def _clean_up_after_failure(self) -> Outcome:
        try:
            self.provider.clean_up(failed=True)
        except Exception as e:
            self._record(str(e))
            logger.warning(f"Rollback of {self.request.key} incomplete: {e}")
        return Outcome.ADVANCE
