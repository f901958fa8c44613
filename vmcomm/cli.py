"""Argparse-based CLI for vmcomm: talk to VM guests over SSH."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from vmcomm.config import SSHSettings, find_config, load_config
from vmcomm.errors import CommunicatorError
from vmcomm.executor import StderrChunk, StdoutChunk
from vmcomm.machine import Machine, StaticMachine

log = logging.getLogger(__name__)

_CONFIG_DIRS = [Path.cwd(), Path.home() / ".config" / "vmcomm"]


# ---------------------------------------------------------------------------
# Machine helper
# ---------------------------------------------------------------------------


def _load(args: argparse.Namespace) -> dict:
    if args.config:
        return load_config(Path(args.config))
    try:
        return load_config(find_config(args.name, _CONFIG_DIRS))
    except FileNotFoundError:
        log.debug("No config for %s, using defaults", args.name)
        return {"ssh": SSHSettings()}


def _get_machine(args: argparse.Namespace) -> Machine:
    """Build the machine from config: a static endpoint or a libvirt domain."""
    config = _load(args)
    settings = config["ssh"]
    if "machine" in config:
        return StaticMachine(args.name, config["machine"], settings=settings)

    from vmcomm.provider import LibvirtMachine

    libvirt_cfg = config.get("libvirt", {})
    return LibvirtMachine(
        args.name,
        uri=args.libvirt_uri or libvirt_cfg.get("uri", "qemu:///system"),
        domain_prefix=libvirt_cfg.get("domain_prefix", "vmt-"),
        ssh=libvirt_cfg.get("ssh", {}),
        settings=settings,
    )


def _close(machine: Machine) -> None:
    machine.communicate.close()
    close = getattr(machine, "close", None)
    if close is not None:
        close()


# ---------------------------------------------------------------------------
# Subcommand handlers
# ---------------------------------------------------------------------------


def cmd_wait(args: argparse.Namespace) -> None:
    """Wait until the guest accepts SSH and has a working shell."""
    machine = _get_machine(args)
    try:
        if not machine.communicate.wait_for_ready(args.timeout):
            print(f"Guest '{args.name}' not ready after {args.timeout}s", file=sys.stderr)
            sys.exit(1)
        print(f"Guest '{args.name}' is ready")
    finally:
        _close(machine)


def cmd_exec(args: argparse.Namespace) -> None:
    """Run a command on the guest, streaming its output."""
    if not args.cmd:
        print("No command given", file=sys.stderr)
        sys.exit(2)

    def relay(event) -> None:
        if isinstance(event, StdoutChunk):
            sys.stdout.buffer.write(event.data)
            sys.stdout.flush()
        elif isinstance(event, StderrChunk):
            sys.stderr.buffer.write(event.data)
            sys.stderr.flush()

    machine = _get_machine(args)
    try:
        result = machine.communicate.execute(
            " ".join(args.cmd),
            sudo=args.sudo,
            force_raw=args.raw,
            error_check=False,
            on_output=relay,
        )
        sys.exit(result.exit_status)
    finally:
        _close(machine)


def cmd_sudo(args: argparse.Namespace) -> None:
    """Run a command on the guest as root."""
    args.sudo = True
    cmd_exec(args)


def cmd_upload(args: argparse.Namespace) -> None:
    """Copy a file or directory to the guest."""
    machine = _get_machine(args)
    try:
        machine.communicate.upload(args.source, args.destination)
        print(f"Uploaded {args.source} → {args.destination}")
    finally:
        _close(machine)


def cmd_download(args: argparse.Namespace) -> None:
    """Copy a file or directory from the guest."""
    machine = _get_machine(args)
    try:
        machine.communicate.download(args.source, Path(args.destination))
        print(f"Downloaded {args.source} → {args.destination}")
    finally:
        _close(machine)


def cmd_reset(args: argparse.Namespace) -> None:
    """Force a reconnect, e.g. after the guest network was reconfigured."""
    machine = _get_machine(args)
    try:
        if not machine.communicate.reset():
            print(f"Guest '{args.name}' did not come back", file=sys.stderr)
            sys.exit(1)
        print(f"Reconnected to '{args.name}'")
    finally:
        _close(machine)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser for vmcomm."""
    parser = argparse.ArgumentParser(
        prog="vmcomm",
        description="Run commands on and copy files to VM guests over SSH",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        default=False,
        help="Enable debug logging",
    )
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Path to a config TOML file (default: <name>.toml lookup)",
    )
    parser.add_argument(
        "--libvirt-uri",
        default=None,
        help="libvirt connection URI for guests without a static address",
    )

    sub = parser.add_subparsers(dest="command")

    # wait
    p_wait = sub.add_parser("wait", help="Wait for a guest to be ready")
    p_wait.add_argument("name", help="Machine name")
    p_wait.add_argument("--timeout", type=float, default=300, help="Seconds to wait")

    # exec
    p_exec = sub.add_parser("exec", help="Run a command on a guest")
    p_exec.add_argument("name", help="Machine name")
    p_exec.add_argument("--sudo", action="store_true", default=False, help="Run with sudo")
    p_exec.add_argument("--raw", action="store_true", default=False, help="Never use a pty")
    p_exec.add_argument("cmd", nargs="*", default=[], help="Command to run")

    # sudo
    p_sudo = sub.add_parser("sudo", help="Run a command on a guest as root")
    p_sudo.add_argument("name", help="Machine name")
    p_sudo.add_argument("--raw", action="store_true", default=False, help="Never use a pty")
    p_sudo.add_argument("cmd", nargs="*", default=[], help="Command to run")

    # upload
    p_upload = sub.add_parser("upload", help="Copy a file or directory to a guest")
    p_upload.add_argument("name", help="Machine name")
    p_upload.add_argument("source", help="Local path (end a directory with /. to copy its contents)")
    p_upload.add_argument("destination", help="Remote path")

    # download
    p_download = sub.add_parser("download", help="Copy a file or directory from a guest")
    p_download.add_argument("name", help="Machine name")
    p_download.add_argument("source", help="Remote path")
    p_download.add_argument("destination", help="Local path")

    # reset
    p_reset = sub.add_parser("reset", help="Reconnect to a guest")
    p_reset.add_argument("name", help="Machine name")

    return parser


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and dispatch to the appropriate command handler."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    dispatch = {
        "wait": cmd_wait,
        "exec": cmd_exec,
        "sudo": cmd_sudo,
        "upload": cmd_upload,
        "download": cmd_download,
        "reset": cmd_reset,
    }

    handler = dispatch.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    try:
        handler(args)
    except CommunicatorError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
