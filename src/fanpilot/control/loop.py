"""The control loop: sense, decide, actuate.

One ControlLoop owns the per-domain state, the fan curves and the actuator
client for a single management controller. Ticks are driven from outside
(by a runner or a test) through run_cycle().
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from tenacity import RetryCallState, RetryError, Retrying, retry_if_result, stop_after_attempt, wait_fixed

from fanpilot.actuator import ActuatorClient, ActuatorError, FanDialect, Ilo4Dialect, SupermicroDialect
from fanpilot.config import FanPilotSettings
from fanpilot.models import ActuatorCommand, ControlPhase, ControlState, Domain, FanMode, TemperatureSample
from fanpilot.sensors import TemperatureReader

from .curve import FanCurve
from .safety import (
    REASON_CONSECUTIVE_FAILURES,
    REASON_PROPAGATED,
    SafetyDecision,
    SafetyOverride,
    propagation_targets,
)

logger = structlog.get_logger(__name__)

EXIT_INIT_FAILURE = 4


class InitializationError(Exception):
    """Startup could not reach, probe or baseline the actuator.

    Attributes:
        message: Human-readable error message.
        exit_code: Suggested exit code (2 unreachable, 3 auth, 4 otherwise).
    """

    def __init__(self, message: str, exit_code: int = EXIT_INIT_FAILURE) -> None:
        self.message = message
        self.exit_code = exit_code
        super().__init__(message)


@dataclass
class CycleReport:
    """Outcome of one control cycle."""

    cycle: int
    samples: Dict[str, TemperatureSample] = field(default_factory=dict)
    decisions: Dict[str, SafetyDecision] = field(default_factory=dict)
    commands_sent: int = 0
    failed_domains: List[str] = field(default_factory=list)
    healthy: Optional[bool] = None
    cancelled: bool = False
    error: Optional[str] = None
    duration: float = 0.0

    @property
    def emergency_domains(self) -> List[str]:
        return [name for name, decision in self.decisions.items() if decision.emergency]

    @property
    def unavailable_domains(self) -> List[str]:
        return [name for name, sample in self.samples.items() if not sample.available]


class ControlLoop:
    """Closed-loop fan control for every configured domain.

    Example:
        >>> loop = ControlLoop(settings, reader, client, Ilo4Dialect())
        >>> loop.initialize()
        >>> report = loop.run_cycle()
        >>> report.decisions["CPU1"].speed
        100
    """

    def __init__(
        self,
        settings: FanPilotSettings,
        reader: TemperatureReader,
        client: ActuatorClient,
        dialect: FanDialect,
        safety: Optional[SafetyOverride] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the loop.

        Args:
            settings: Validated settings; treated as immutable.
            reader: Temperature reader covering every domain's sources.
            client: Actuator client for the controller.
            dialect: Command dialect matching the controller family.
            safety: Safety rules (built from settings when omitted).
            clock: Monotonic clock used for last known good ageing.
            sleep: Sleep function for startup waits (injectable for tests).
        """
        self.settings = settings
        self.reader = reader
        self.client = client
        self.dialect = dialect
        self.safety = safety or SafetyOverride(
            max_consecutive_errors=settings.max_consecutive_errors,
            last_known_good_max_age=settings.last_known_good_max_age,
            clock=clock,
        )
        self._clock = clock
        self._sleep = sleep

        self.phase = ControlPhase.INITIALIZING
        self.states: Dict[str, ControlState] = {d.name: ControlState(domain=d.name) for d in settings.domains}
        self.curves: Dict[str, FanCurve] = {
            d.name: FanCurve(d.breakpoints, d.default_speed) for d in settings.domains
        }
        self.cycle_count = 0
        self.cycle_errors = 0
        self.baseline_failures = 0

        self._cycle_lock = threading.Lock()
        self._cancel = threading.Event()
        self._shut_down = False

    @property
    def domains(self) -> List[Domain]:
        return list(self.settings.domains)

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Ask the loop to stop; the current cycle ends at the next domain boundary."""
        self._cancel.set()

    # Startup

    def initialize(self) -> None:
        """Wait for the controller, probe it and apply the baseline.

        Raises:
            InitializationError: Unreachable, probe failed, or a baseline
                command failed while baseline_strict is set.
        """
        self.phase = ControlPhase.INITIALIZING
        logger.info(
            "initializing",
            endpoint=self.client.endpoint,
            actuator=self.dialect.kind.value,
            domains=[d.name for d in self.domains],
        )
        self._wait_until_reachable()
        self._probe()

        self.phase = ControlPhase.BASELINE
        if isinstance(self.dialect, Ilo4Dialect):
            self._baseline_ilo4(self.dialect)
        elif isinstance(self.dialect, SupermicroDialect):
            self._baseline_supermicro(self.dialect)

        self.phase = ControlPhase.MONITORING
        logger.info("initialized", baseline_failures=self.baseline_failures)

    def _wait_until_reachable(self) -> None:
        attempts = self.settings.reachability_attempts

        def log_waiting(retry_state: RetryCallState) -> None:
            logger.info(
                "waiting_for_actuator",
                endpoint=self.client.endpoint,
                attempt=retry_state.attempt_number,
                max_attempts=attempts,
            )

        retrying = Retrying(
            stop=stop_after_attempt(attempts),
            wait=wait_fixed(self.settings.reachability_interval),
            retry=retry_if_result(lambda reachable: not reachable),
            before_sleep=log_waiting,
            sleep=self._sleep,
        )
        try:
            retrying(self.client.is_reachable)
        except RetryError as e:
            raise InitializationError(
                f"{self.client.endpoint} not reachable after {attempts} attempts",
                exit_code=2,
            ) from e

    def _probe(self) -> None:
        try:
            self.client.execute(self.dialect.probe())
        except ActuatorError as e:
            exit_code = e.exit_code if e.exit_code in (2, 3) else EXIT_INIT_FAILURE
            raise InitializationError(f"Actuator probe failed: {e.message}", exit_code=exit_code) from e
        logger.info("actuator_probe_ok", endpoint=self.client.endpoint)

    def _baseline_command(self, command: ActuatorCommand) -> Optional[str]:
        """Run one baseline command; None means it failed (best effort)."""
        try:
            return self.client.execute(command)
        except ActuatorError as e:
            if self.settings.baseline_strict:
                raise InitializationError(f"Baseline command '{command}' failed: {e.message}") from e
            self.baseline_failures += 1
            logger.warning(
                "baseline_command_failed",
                command=command.text,
                error_type=type(e).__name__,
                error=e.message,
            )
            return None

    def _per_target(self, speed_for: Callable[[Domain], int]) -> Dict[int, int]:
        """Highest value of ``speed_for`` among the domains sharing each target."""
        speeds: Dict[int, int] = {}
        for domain in self.domains:
            for target in domain.targets:
                speeds[target] = max(speeds.get(target, 0), speed_for(domain))
        return speeds

    @property
    def targets(self) -> List[int]:
        return sorted(self._per_target(lambda domain: 0))

    def _baseline_ilo4(self, dialect: Ilo4Dialect) -> None:
        floors = self._per_target(lambda domain: domain.min_speed)
        for target, speed in sorted(floors.items()):
            self._baseline_command(dialect.set_min(target, speed))

        if self.settings.pid_min_low is not None:
            listing = self._baseline_command(dialect.pid_listing())
            if listing is not None:
                pids = dialect.parse_pids(listing)
                logger.info("pids_discovered", pids=pids)
                for pid in pids:
                    self._baseline_command(dialect.set_pid_low(pid, self.settings.pid_min_low))

        for sensor in self.settings.disabled_sensors:
            self._baseline_command(dialect.disable_sensor(sensor))

    def _baseline_supermicro(self, dialect: SupermicroDialect) -> None:
        if self._baseline_command(dialect.set_fan_mode(self.settings.fan_mode)) is not None:
            # The BMC resets zone levels shortly after a mode change
            if self.settings.fan_mode_delay:
                self._sleep(self.settings.fan_mode_delay)

        if self.settings.set_thresholds:
            listing = self._baseline_command(dialect.list_fans())
            if listing is not None:
                for fan in dialect.parse_fans(listing):
                    self._baseline_command(
                        dialect.sensor_thresholds(fan, "lower", self.settings.threshold_lower)
                    )
                    self._baseline_command(
                        dialect.sensor_thresholds(fan, "upper", self.settings.threshold_upper)
                    )

        for domain in self.domains:
            results = [
                self._baseline_command(dialect.set_speed(target, domain.min_speed))
                for target in domain.targets
            ]
            if all(result is not None for result in results):
                self.states[domain.name].last_commanded_speed = domain.min_speed

    # Cycles

    def run_cycle(self) -> CycleReport:
        """Run one sense-decide-actuate tick.

        Never raises: unexpected errors are logged, counted and reported in
        CycleReport.error so the next tick runs normally.
        """
        with self._cycle_lock:
            self.cycle_count += 1
            report = CycleReport(cycle=self.cycle_count)
            structlog.contextvars.bind_contextvars(cycle=self.cycle_count)
            started = self._clock()
            try:
                self._run_cycle_locked(report)
            except Exception as e:
                self.cycle_errors += 1
                report.error = str(e)
                logger.error(
                    "cycle_failed",
                    error_type=type(e).__name__,
                    error=str(e),
                    cycle_errors=self.cycle_errors,
                    exc_info=True,
                )
            finally:
                report.duration = self._clock() - started
                structlog.contextvars.unbind_contextvars("cycle")
            return report

    def _run_cycle_locked(self, report: CycleReport) -> None:
        if self.cancelled:
            report.cancelled = True
            return
        logger.debug("cycle_started", phase=self.phase.value)

        for domain in self.domains:
            if self.cancelled:
                report.cancelled = True
                return
            report.samples[domain.name] = self.reader.read(domain)

        for domain in self.domains:
            report.decisions[domain.name] = self._decide(domain, report.samples[domain.name])

        affected = report.emergency_domains
        for name in sorted(propagation_targets(self.domains, affected)):
            domain = self.settings.get_domain(name)
            if domain is None:
                continue
            report.decisions[name] = SafetyDecision(
                self.settings.emergency_speed_for(domain), True, REASON_PROPAGATED
            )
            logger.warning("emergency_propagated", domain=name, source_domains=affected)

        self.phase = ControlPhase.EMERGENCY_OVERRIDE if report.emergency_domains else ControlPhase.MONITORING

        for domain in self.domains:
            if self.cancelled:
                report.cancelled = True
                return
            self._apply(domain, report.decisions[domain.name], report)

        if self.cycle_count % self.settings.health_check_every == 0:
            report.healthy = self._health_check()

        logger.info(
            "cycle_complete",
            phase=self.phase.value,
            commands_sent=report.commands_sent,
            emergency_domains=report.emergency_domains,
            failed_domains=report.failed_domains,
        )

    def _decide(self, domain: Domain, sample: TemperatureSample) -> SafetyDecision:
        state = self.states[domain.name]
        state.cycles += 1

        temperature = sample.value
        substituted = False
        if sample.available:
            state.record_reading(sample.value, now=self._clock())
        else:
            state.record_read_failure()
            temperature = self.safety.substitute_temperature(state)
            substituted = temperature is not None

        computed = self._curve_speed(domain, state, temperature) if temperature is not None else None
        decision = self.safety.apply(
            state,
            temperature,
            computed,
            max_safe_temp=self.settings.max_safe_temp_for(domain),
            emergency_speed=self.settings.emergency_speed_for(domain),
            substituted=substituted,
        )

        log = logger.bind(
            domain=domain.name,
            temperature=temperature,
            speed=decision.speed,
            emergency=decision.emergency,
            reason=decision.reason,
        )
        if decision.emergency:
            log.warning("emergency_override", read_failures=state.read_failures)
        else:
            log.info("domain_decided", source=sample.source.value if sample.source else None)
        return decision

    def _curve_speed(self, domain: Domain, state: ControlState, temperature: int) -> int:
        """Curve speed clamped to the domain range, held within the hysteresis band."""
        if (
            domain.hysteresis
            and not state.emergency
            and state.last_commanded_speed is not None
            and state.last_evaluated_temp is not None
            and abs(temperature - state.last_evaluated_temp) < domain.hysteresis
        ):
            return state.last_commanded_speed

        state.last_evaluated_temp = temperature
        return self._clamp(domain, self.curves[domain.name].evaluate(temperature))

    def _clamp(self, domain: Domain, speed: int) -> int:
        return max(domain.min_speed, min(speed, self.settings.max_speed_for(domain)))

    def preview(self) -> Dict[str, Tuple[TemperatureSample, SafetyDecision]]:
        """Read every domain and decide without commanding or touching state."""
        results: Dict[str, Tuple[TemperatureSample, SafetyDecision]] = {}
        for domain in self.domains:
            sample = self.reader.read(domain)
            computed = None
            if sample.available:
                computed = self._clamp(domain, self.curves[domain.name].evaluate(sample.value))
            decision = self.safety.apply(
                ControlState(domain=domain.name),
                sample.value,
                computed,
                max_safe_temp=self.settings.max_safe_temp_for(domain),
                emergency_speed=self.settings.emergency_speed_for(domain),
            )
            results[domain.name] = (sample, decision)
        return results

    def _apply(self, domain: Domain, decision: SafetyDecision, report: CycleReport) -> None:
        state = self.states[domain.name]
        state.emergency = decision.emergency

        if decision.speed != state.last_commanded_speed:
            failed = False
            for target in domain.targets:
                try:
                    self.client.execute(self.dialect.set_speed(target, decision.speed))
                    report.commands_sent += 1
                except ActuatorError as e:
                    failed = True
                    logger.error(
                        "command_failed",
                        domain=domain.name,
                        target=target,
                        speed=decision.speed,
                        error_type=type(e).__name__,
                        error=e.message,
                    )

            if failed:
                # Unknown actuator state: resend next cycle
                state.last_commanded_speed = None
                state.command_failures += 1
                report.failed_domains.append(domain.name)
                return

            state.last_commanded_speed = decision.speed
            state.command_failures = 0
            logger.info(
                "fan_speed_applied",
                domain=domain.name,
                targets=domain.targets,
                speed=decision.speed,
                emergency=decision.emergency,
            )

        if decision.emergency:
            state.read_failures = 0
            if decision.reason == REASON_CONSECUTIVE_FAILURES:
                # A sensor that stays dead must not fall back to the old reading
                state.forget_last_known_good()

    def _health_check(self) -> bool:
        if self.client.test_connection():
            logger.debug("health_check_ok", endpoint=self.client.endpoint)
            return True

        logger.warning("health_check_failed", endpoint=self.client.endpoint)
        try:
            self.client.reestablish_session()
            return True
        except ActuatorError as e:
            logger.error("session_recovery_failed", endpoint=self.client.endpoint, error=e.message)
            for state in self.states.values():
                state.last_commanded_speed = None
            return False

    # Reconfiguration

    def _curve_for(self, domain_name: str) -> FanCurve:
        curve = self.curves.get(domain_name)
        if curve is None:
            raise KeyError(f"Unknown domain '{domain_name}'")
        return curve

    def _check_speed(self, speed: int) -> None:
        if not 0 <= speed <= self.settings.speed_limit:
            raise ValueError(f"Speed must be between 0 and {self.settings.speed_limit}, got {speed}")

    def _curve_changed(self, domain_name: str, action: str, **details: Any) -> None:
        # Force re-evaluation even inside the hysteresis band
        self.states[domain_name].last_evaluated_temp = None
        logger.info("curve_updated", domain=domain_name, action=action, **details)

    def add_breakpoint(self, domain_name: str, threshold: int, speed: int) -> None:
        self._check_speed(speed)
        with self._cycle_lock:
            self._curve_for(domain_name).add(threshold, speed)
            self._curve_changed(domain_name, "add", threshold=threshold, speed=speed)

    def remove_breakpoint(self, domain_name: str, threshold: int) -> None:
        with self._cycle_lock:
            self._curve_for(domain_name).remove(threshold)
            self._curve_changed(domain_name, "remove", threshold=threshold)

    def set_breakpoint(self, domain_name: str, threshold: int, speed: int) -> None:
        self._check_speed(speed)
        with self._cycle_lock:
            self._curve_for(domain_name).set_speed(threshold, speed)
            self._curve_changed(domain_name, "set", threshold=threshold, speed=speed)

    def replace_curve(
        self,
        domain_name: str,
        breakpoints: Sequence[Tuple[int, int]],
        default_speed: int,
    ) -> None:
        self._check_speed(default_speed)
        for _, speed in breakpoints:
            self._check_speed(speed)
        with self._cycle_lock:
            self._curve_for(domain_name).replace(breakpoints, default_speed)
            self._curve_changed(domain_name, "replace", breakpoints=list(breakpoints))

    def reload_curves(self, domains: Sequence[Domain]) -> int:
        """Replace curves of known domains from freshly loaded configuration.

        Returns:
            Number of curves replaced. Unknown domains are ignored; adding or
            removing domains needs a restart.
        """
        replaced = 0
        for domain in domains:
            if domain.name not in self.curves:
                logger.warning("curve_reload_unknown_domain", domain=domain.name)
                continue
            self.replace_curve(domain.name, domain.breakpoints, domain.default_speed)
            replaced += 1
        return replaced

    # Manual override and shutdown

    def emergency_all(self) -> CycleReport:
        """Drive every domain to its emergency speed right now."""
        with self._cycle_lock:
            self.phase = ControlPhase.EMERGENCY_OVERRIDE
            report = CycleReport(cycle=self.cycle_count)
            for domain in self.domains:
                decision = SafetyDecision(self.settings.emergency_speed_for(domain), True, "manual")
                report.decisions[domain.name] = decision
                logger.warning("emergency_override", domain=domain.name, speed=decision.speed, reason="manual")
                self._apply(domain, decision, report)
            return report

    def set_target_speed(self, target: int, speed: int) -> None:
        """Command one fan (iLO4) or zone (Supermicro) directly.

        Raises:
            ValueError: Target or speed outside what the controller accepts.
            ActuatorError: The command failed after retries.
        """
        command = self.dialect.set_speed(target, speed)
        with self._cycle_lock:
            self.client.execute(command)
            for domain in self.domains:
                if target in domain.targets:
                    self.states[domain.name].last_commanded_speed = None
        logger.warning("manual_speed_set", target=target, speed=speed)

    def _set_targets(self, speeds: Dict[int, int]) -> List[int]:
        failed: List[int] = []
        for target, speed in sorted(speeds.items()):
            try:
                self.set_target_speed(target, speed)
            except ActuatorError as e:
                failed.append(target)
                logger.error("manual_command_failed", target=target, speed=speed, error=e.message)
        return failed

    def set_all(self, speed: int) -> List[int]:
        """Command every configured target to ``speed``.

        Returns:
            Targets whose command failed.
        """
        self._check_speed(speed)
        return self._set_targets({target: speed for target in self.targets})

    def reset(self) -> List[int]:
        """Put every target back on its safe speed.

        On iLO4 the per-fan minimum is restored to the domain floor first, since
        a manual --set-speed may have left it pinned.

        Returns:
            Targets whose commands failed.
        """
        failed: List[int] = []
        if isinstance(self.dialect, Ilo4Dialect):
            for target, floor in sorted(self._per_target(lambda domain: domain.min_speed).items()):
                try:
                    with self._cycle_lock:
                        self.client.execute(self.dialect.set_min(target, floor))
                except ActuatorError as e:
                    failed.append(target)
                    logger.error("manual_command_failed", target=target, speed=floor, error=e.message)
        failed += self._set_targets(self._per_target(self.settings.safe_speed_for))
        return sorted(set(failed))

    def _supermicro(self) -> SupermicroDialect:
        if not isinstance(self.dialect, SupermicroDialect):
            raise ValueError("Fan modes and zone levels exist only on Supermicro BMCs")
        return self.dialect

    def set_fan_mode(self, mode: FanMode) -> None:
        """Switch a Supermicro BMC to ``mode`` and wait for it to settle.

        Raises:
            ValueError: The actuator is not a Supermicro BMC.
            ActuatorError: The command failed after retries.
        """
        dialect = self._supermicro()
        with self._cycle_lock:
            self.client.execute(dialect.set_fan_mode(mode))
        logger.warning("fan_mode_set", mode=mode.name)
        if self.settings.fan_mode_delay:
            self._sleep(self.settings.fan_mode_delay)

    def zone_levels(self) -> Dict[int, Optional[int]]:
        """Live duty cycle of every configured Supermicro zone (None if unparsable)."""
        dialect = self._supermicro()
        levels: Dict[int, Optional[int]] = {}
        for target in self.targets:
            with self._cycle_lock:
                output = self.client.execute(dialect.get_level(target))
            levels[target] = dialect.parse_level(output)
        return levels

    def shutdown(self) -> None:
        """Leave every fan at its safe speed and close the actuator.

        Sends exactly one command per target. Waiting for a running cycle and
        sending the commands share one shutdown_timeout deadline; when it
        passes, the client is aborted and shutdown returns. Safe to call more
        than once.
        """
        if self._shut_down:
            return
        self._shut_down = True
        self._cancel.set()
        timeout = self.settings.shutdown_timeout
        deadline = time.monotonic() + timeout

        acquired = self._cycle_lock.acquire(timeout=timeout)
        try:
            self.phase = ControlPhase.SHUTTING_DOWN
            speeds = self._per_target(self.settings.safe_speed_for)

            logger.info("shutting_down", targets=sorted(speeds), timeout=timeout)
            applied: List[int] = []
            # Daemon thread: a hung command must not hold up interpreter exit
            worker = threading.Thread(
                target=lambda: applied.append(self._apply_safe_speeds(speeds)),
                name="fanpilot-shutdown",
                daemon=True,
            )
            worker.start()
            worker.join(max(0.0, deadline - time.monotonic()))

            if worker.is_alive():
                logger.error("shutdown_timed_out", timeout=timeout)
                self.client.abort()
            else:
                logger.info("shutdown_complete", applied=sum(applied), targets=len(speeds))
                self.client.close()
        finally:
            if acquired:
                self._cycle_lock.release()

    def _apply_safe_speeds(self, speeds: Dict[int, int]) -> int:
        applied = 0
        for target, speed in sorted(speeds.items()):
            try:
                self.client.execute(self.dialect.set_speed(target, speed))
                applied += 1
            except ActuatorError as e:
                logger.error("shutdown_command_failed", target=target, speed=speed, error=e.message)
        return applied

    def run(self, runner: Any, on_report: Optional[Callable[[CycleReport], None]] = None) -> None:
        """Drive cycles through ``runner`` until it stops, then shut down.

        Args:
            runner: An IntervalRunner (or anything with the same run() and
                shutdown()).
            on_report: Called with every CycleReport (e.g. health file updates).
        """

        def tick() -> None:
            if self.cancelled:
                # The stop request reached us before the runner had started
                runner.shutdown(wait=False)
                return
            report = self.run_cycle()
            if on_report is not None:
                on_report(report)

        try:
            runner.run(tick, interval=self.settings.poll_interval)
        finally:
            self.shutdown()
