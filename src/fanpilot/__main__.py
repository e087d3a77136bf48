"""
Entry point for the fanpilot CLI.

Usage:
    fanpilot                Run the control service
    fanpilot --test         Check reachability, probe the actuator, read sensors
    fanpilot --status       Show temperatures, decided speeds and fan curves
    fanpilot --init-only    Apply the baseline and exit
    fanpilot --once         Apply the baseline, run one cycle and exit
    fanpilot --emergency    Set every domain to its emergency speed and exit
    fanpilot --set-speed TARGET SPEED
                            Set one fan (iLO4) or zone level (Supermicro)
    fanpilot --set-all SPEED
                            Set every configured fan or zone
    fanpilot --reset        Restore minimums and safe speeds
    fanpilot --set-mode MODE
                            Switch the Supermicro fan mode
    fanpilot --version      Show version and exit

Exit Codes:
    0 - Success
    1 - Configuration error (invalid settings, missing required values)
    2 - Actuator unreachable (network, timeouts, exhausted retries)
    3 - Authentication error (invalid credentials)
    4 - Initialization failure (probe or strict baseline failed)
"""

from __future__ import annotations

import argparse
import signal
import sys
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from types import FrameType
    from fanpilot.actuator import Transport
    from fanpilot.config import FanPilotSettings
    from fanpilot.control import ControlLoop, CycleReport
    from fanpilot.health import HealthStatus
    from fanpilot.scheduler import IntervalRunner
    from fanpilot.sensors import TemperatureReader

from fanpilot import __version__

# Module-level handles for signal handlers
_loop: Optional["ControlLoop"] = None
_runner: Optional["IntervalRunner"] = None

# Exit codes
EXIT_SUCCESS = 0
EXIT_CONFIG_ERROR = 1
EXIT_CONNECTION_ERROR = 2
EXIT_AUTH_ERROR = 3
EXIT_INIT_ERROR = 4

# Supermicro fan modes by name or by raw mode number
FAN_MODE_CHOICES = ["STANDARD", "FULL", "OPTIMAL", "PUE", "HEAVY_IO", "0", "1", "2", "3", "4"]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="fanpilot",
        description="Temperature-driven fan control for HP iLO4 and Supermicro servers",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Exit Codes:
  0   Success
  1   Configuration error
  2   Actuator unreachable
  3   Authentication error (invalid credentials)
  4   Initialization failure

Environment Variables:
  CONFIG_PATH                 Path to YAML configuration file
  FANPILOT_ACTUATOR           ilo4 or ipmi
  FANPILOT_HOST               iLO/BMC hostname or IP
  FANPILOT_USERNAME           iLO/BMC username
  FANPILOT_PASSWORD           iLO/BMC password
  FANPILOT_PASSWORD_FILE      Path to file containing password (Docker secrets)
  FANPILOT_POLL_INTERVAL      Seconds between control cycles (default: 30)
  FANPILOT_MAX_SAFE_TEMP      Emergency threshold in C (default: 80)
  FANPILOT_LOG_LEVEL          Logging level: DEBUG, INFO, WARNING, ERROR
  FANPILOT_LOG_FORMAT         Log format: json or text

Examples:
  # Run with config file
  fanpilot --config /etc/fanpilot/config.yaml

  # Check the iLO and sensors without touching the fans
  fanpilot --test

  # Show what the curves would do right now
  fanpilot --status

  # Pin fan 3 at 40 until the service runs again
  fanpilot --set-speed 3 40
""",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )
    parser.add_argument(
        "--config",
        metavar="PATH",
        help="YAML configuration file (overrides CONFIG_PATH)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--test",
        action="store_true",
        help="Check reachability, probe the actuator and read every domain, then exit",
    )
    mode.add_argument(
        "--status",
        action="store_true",
        help="Show temperatures, decided speeds and curves without commanding fans",
    )
    mode.add_argument(
        "--init-only",
        action="store_true",
        help="Apply the baseline and exit",
    )
    mode.add_argument(
        "--once",
        action="store_true",
        help="Apply the baseline, run exactly one control cycle and exit",
    )
    mode.add_argument(
        "--emergency",
        action="store_true",
        help="Set every domain to its emergency speed and exit",
    )
    mode.add_argument(
        "--set-speed",
        nargs=2,
        type=int,
        metavar=("TARGET", "SPEED"),
        help="Set one fan (iLO4) or zone level (Supermicro) and exit",
    )
    mode.add_argument(
        "--set-all",
        type=int,
        metavar="SPEED",
        help="Set every configured fan or zone to SPEED and exit",
    )
    mode.add_argument(
        "--reset",
        action="store_true",
        help="Restore minimums and put every fan on its safe speed, then exit",
    )
    mode.add_argument(
        "--set-mode",
        type=str.upper,
        choices=FAN_MODE_CHOICES,
        metavar="MODE",
        help="Supermicro only: STANDARD, FULL, OPTIMAL, PUE, HEAVY_IO (or 0-4)",
    )
    return parser.parse_args(argv)


def build_transport(config: "FanPilotSettings") -> "Transport":
    """Transport matching the configured controller family."""
    from fanpilot.actuator import IpmiToolTransport, SSHTransport
    from fanpilot.models import ActuatorKind

    if config.actuator == ActuatorKind.ILO4:
        return SSHTransport(
            host=config.host or "",
            username=config.username or "",
            password=config.password or None,
            port=config.port or 22,
            key_filename=config.ssh_key_filename,
            connect_timeout=config.command_timeout,
            host_key_fingerprint=config.ssh_host_key_fingerprint,
        )
    return IpmiToolTransport(
        ipmitool_path=config.ipmitool_path,
        host=config.host,
        username=config.username,
        password=config.password or None,
        interface=config.ipmi_interface,
        use_sudo=config.use_sudo,
        probe_timeout=config.sensor_timeout,
    )


def build_reader(config: "FanPilotSettings", transport: "Transport") -> "TemperatureReader":
    """Temperature reader with every source kind available.

    BMC sensors are read through the actuator's own ipmitool settings for
    Supermicro, and through local in-band ipmitool otherwise.
    """
    from fanpilot.actuator import IpmiToolTransport
    from fanpilot.models import SourceKind
    from fanpilot.sensors import (
        IpmiSensorSource,
        SensorsSource,
        SmartSource,
        TemperatureReader,
        ThermalZoneSource,
    )

    if isinstance(transport, IpmiToolTransport):
        ipmi = transport
    else:
        ipmi = IpmiToolTransport(ipmitool_path=config.ipmitool_path, use_sudo=config.use_sudo)

    return TemperatureReader(
        {
            SourceKind.THERMAL_ZONE: ThermalZoneSource(),
            SourceKind.SENSORS: SensorsSource(timeout=config.sensor_timeout),
            SourceKind.IPMI: IpmiSensorSource(ipmi.base_args, timeout=config.sensor_timeout),
            SourceKind.SMART: SmartSource(timeout=config.sensor_timeout, use_sudo=config.use_sudo),
        }
    )


def build_control_loop(config: "FanPilotSettings") -> "ControlLoop":
    """Wire transport, retry policy, client, dialect and reader into a loop."""
    from fanpilot.actuator import ActuatorClient, RetryPolicy, dialect_for
    from fanpilot.control import ControlLoop

    transport = build_transport(config)
    dialect = dialect_for(config.actuator)
    policy = RetryPolicy(
        max_attempts=config.command_retries,
        delay=config.retry_delay,
        empty_output_retries=config.empty_output_retries,
        reconnect_attempts=config.reconnect_attempts,
    )
    client = ActuatorClient(
        transport,
        policy=policy,
        command_timeout=config.command_timeout,
        probe=dialect.probe(),
    )
    return ControlLoop(config, build_reader(config, transport), client, dialect)


def health_from_report(report: "CycleReport") -> Tuple["HealthStatus", Dict[str, Any]]:
    """Map a cycle outcome onto a health file status."""
    from fanpilot.health import HealthStatus

    details: Dict[str, Any] = {
        "cycle": report.cycle,
        "temperatures": {name: s.value for name, s in report.samples.items()},
        "speeds": {name: d.speed for name, d in report.decisions.items()},
    }
    if report.error is not None or report.healthy is False:
        details["error"] = report.error or "actuator session lost"
        return HealthStatus.UNHEALTHY, details
    if report.emergency_domains:
        details["emergency_domains"] = report.emergency_domains
        return HealthStatus.EMERGENCY, details
    if report.failed_domains or report.unavailable_domains:
        details["failed_domains"] = report.failed_domains
        details["unavailable_domains"] = report.unavailable_domains
        return HealthStatus.DEGRADED, details
    return HealthStatus.HEALTHY, details


def handle_shutdown(signum: int, frame: Optional[FrameType]) -> None:
    """Handle SIGTERM/SIGINT: stop ticking; the loop then applies safe speeds."""
    from fanpilot.logging import get_logger

    get_logger().info("received_signal", signal=signal.Signals(signum).name, action="shutting down")
    if _loop is not None:
        _loop.cancel()
    if _runner is not None:
        _runner.shutdown(wait=False)


def handle_sighup(signum: int, frame: Optional[FrameType]) -> None:
    """Handle SIGHUP signal: reload fan curves from configuration."""
    from fanpilot.config.loader import reload_config
    from fanpilot.logging import get_logger

    log = get_logger()
    log.info("received_sighup", action="reloading fan curves")
    if _loop is None:
        return
    try:
        config = reload_config()
        replaced = _loop.reload_curves(config.domains)
        log.info("config_reloaded", status="success", curves=replaced)
    except (Exception, SystemExit) as e:
        log.error("config_reload_failed", error=str(e))


def print_banner(config: "FanPilotSettings", endpoint: str) -> None:
    """Print startup banner with version and configuration summary."""
    lines = [
        "",
        f"fanpilot v{__version__}",
        "=" * 40,
        f"Actuator:      {config.actuator.value} ({endpoint})",
        f"Domains:       {', '.join(d.name for d in config.domains)}",
        f"Poll Interval: {config.poll_interval}s",
        f"Max Safe Temp: {config.max_safe_temp}C",
        f"Log Level:     {config.log_level}",
        f"Log Format:    {config.log_format}",
        "=" * 40,
        "",
    ]
    for line in lines:
        print(line)


def print_status(loop: "ControlLoop") -> None:
    """Print current readings, decided speeds and curves.

    On Supermicro the live zone levels are read back from the BMC as well.
    """
    from fanpilot.actuator import ActuatorError, SupermicroDialect

    for name, (sample, decision) in loop.preview().items():
        temperature = f"{sample.value}C" if sample.available else "unavailable"
        source = sample.source.value if sample.source else "-"
        flag = f" EMERGENCY ({decision.reason})" if decision.emergency else ""
        print(f"{name:<10} {temperature:>12} via {source:<13} -> speed {decision.speed}{flag}")
    print()
    for name, curve in loop.curves.items():
        points = ", ".join(f"{bp.threshold}C:{bp.speed}" for bp in curve.breakpoints)
        print(f"{name:<10} curve [{points}] default {curve.default_speed}")

    if isinstance(loop.dialect, SupermicroDialect):
        print()
        try:
            levels = loop.zone_levels()
        except ActuatorError as e:
            print(f"Zone levels unavailable: {e.message}")
            return
        for zone, level in levels.items():
            print(f"zone {zone:<5} level {level}%" if level is not None else f"zone {zone:<5} level unknown")


def run_manual(loop: "ControlLoop", args: argparse.Namespace, log: Any) -> int:
    """--set-speed, --set-all, --reset and --set-mode: send the commands and exit.

    The control loop is not started, so the fans keep these settings until
    the service runs again.
    """
    from fanpilot.actuator import ActuatorError
    from fanpilot.models import FanMode

    try:
        if args.set_speed:
            target, speed = args.set_speed
            loop.set_target_speed(target, speed)
            print(f"Target {target} set to {speed}")
            return EXIT_SUCCESS
        if args.set_mode:
            mode = list(FanMode)[int(args.set_mode)] if args.set_mode.isdigit() else FanMode[args.set_mode]
            loop.set_fan_mode(mode)
            print(f"Fan mode set to {mode.name}")
            return EXIT_SUCCESS
        if args.set_all is not None:
            failed = loop.set_all(args.set_all)
        else:
            failed = loop.reset()
    except ValueError as e:
        print(f"\nInvalid request: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except ActuatorError as e:
        log.error("manual_command_failed", error=e.message)
        print(f"\nCommand failed: {e}", file=sys.stderr)
        return e.exit_code if e.exit_code in (EXIT_CONNECTION_ERROR, EXIT_AUTH_ERROR) else EXIT_CONNECTION_ERROR

    if failed:
        print(f"\nCommand failed for: {', '.join(str(t) for t in failed)}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR
    print("Reset to safe speeds" if args.reset else f"Every target set to {args.set_all}")
    return EXIT_SUCCESS


def run_test(loop: "ControlLoop", log: Any) -> int:
    """--test: reachability, probe and one sensor pass; fans are not touched."""
    from fanpilot.actuator import ActuatorError, AuthenticationFailed

    if not loop.client.is_reachable():
        print(f"\nActuator unreachable: {loop.client.endpoint}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR
    try:
        loop.client.execute(loop.dialect.probe())
    except AuthenticationFailed as e:
        log.error("authentication_failed", error=e.message)
        print(f"\nAuthentication error: {e}", file=sys.stderr)
        return EXIT_AUTH_ERROR
    except ActuatorError as e:
        log.error("connection_failed", error=e.message)
        print(f"\nConnection error: {e}", file=sys.stderr)
        return EXIT_CONNECTION_ERROR

    print_status(loop)
    print("\nConfiguration, actuator and sensors: OK")
    return EXIT_SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for fanpilot.

    Returns:
        Exit code (0=success, 1=config error, 2=unreachable, 3=auth error, 4=init failure)
    """
    global _loop, _runner
    args = parse_args(argv)

    # Import here to allow --help without dependencies
    from fanpilot.config.loader import ConfigurationError, load_config
    from fanpilot.control import InitializationError
    from fanpilot.health import HealthStatus, clear_health_status, update_health_status
    from fanpilot.logging import configure_logging, get_logger
    from fanpilot.scheduler import IntervalRunner

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    except SystemExit as e:
        # Validation errors cause sys.exit(1) in loader
        return e.code if isinstance(e.code, int) else EXIT_CONFIG_ERROR

    configure_logging(log_format=config.log_format, log_level=config.log_level)
    log = get_logger()
    health_file = config.health_file or None

    def write_health(status: HealthStatus, details: Optional[Dict[str, Any]] = None) -> None:
        if health_file:
            try:
                update_health_status(status, details, path=health_file)
            except OSError as e:
                log.warning("health_file_write_failed", path=health_file, error=str(e))

    loop = build_control_loop(config)

    if args.test:
        try:
            return run_test(loop, log)
        finally:
            loop.client.close()

    if args.status:
        try:
            print_status(loop)
        finally:
            loop.client.close()
        return EXIT_SUCCESS

    if args.set_speed or args.set_all is not None or args.reset or args.set_mode:
        try:
            return run_manual(loop, args, log)
        finally:
            loop.client.close()

    if args.emergency:
        try:
            report = loop.emergency_all()
        finally:
            loop.client.close()
        if report.failed_domains:
            print(f"\nEmergency speed failed for: {', '.join(report.failed_domains)}", file=sys.stderr)
            return EXIT_CONNECTION_ERROR
        print("Emergency speed applied to every domain")
        return EXIT_SUCCESS

    print_banner(config, loop.client.endpoint)
    log.info("starting", version=__version__, actuator=config.actuator.value)
    write_health(HealthStatus.STARTING)

    try:
        loop.initialize()
    except InitializationError as e:
        log.error("initialization_failed", error=e.message, exit_code=e.exit_code)
        print(f"\nInitialization failed: {e.message}", file=sys.stderr)
        write_health(HealthStatus.UNHEALTHY, {"error": e.message})
        loop.client.close()
        return e.exit_code

    if args.init_only:
        loop.client.close()
        print("Baseline applied")
        return EXIT_SUCCESS

    if args.once:
        try:
            report = loop.run_cycle()
            write_health(*health_from_report(report))
        finally:
            loop.client.close()
        if report.error is not None:
            return EXIT_INIT_ERROR
        return EXIT_CONNECTION_ERROR if report.failed_domains else EXIT_SUCCESS

    _loop = loop
    _runner = IntervalRunner()
    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, handle_sighup)

    log.info("service_starting", poll_interval=config.poll_interval, domains=len(config.domains))
    try:
        loop.run(_runner, on_report=lambda report: write_health(*health_from_report(report)))
    finally:
        if health_file:
            clear_health_status(health_file)
        _loop = None
        _runner = None

    log.info("shutdown", reason="stopped")
    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
