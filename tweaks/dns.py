"""
DNS resolver order tweak.

Switches name resolution from systemd-resolved to resolvconf and pins a
primary and secondary nameserver at the top of /etc/resolv.conf through
the resolvconf head fragment. After ``resolvconf -u`` regenerates the
merged file, the order of the two entries is verified by line number;
a dropped or reordered entry fails the run.
"""

import ipaddress
import os
import re
from datetime import datetime
from pathlib import Path
from typing import List, Tuple

from net_tweaker import (Colors, CommandFailedError, CommandReloader, ConfigurationError,
                         InconsistentMarkerStateError, MarkerState, Outcome, PatchResult,
                         TargetFile, TweakContext, VerificationFailedError,
                         create_timestamped_backup, file_lock, replace_symlink,
                         safe_write_file)

TITLE = "DNS Resolver Order"
DESCRIPTION = "Pin primary/secondary nameservers via resolvconf"

NOTICE = [
    "This replaces systemd-resolved with resolvconf",
    "and pins the nameserver order in /etc/resolv.conf.",
]

DEFAULTS = {
    'primary': '1.1.1.1',
    'secondary': '8.8.8.8',
    'sentinel': '# Managed by net-tweaker: resolver order',
    'head_file': '/etc/resolvconf/resolv.conf.d/head',
    'resolv_conf': '/etc/resolv.conf',
    'resolvconf_output': '/run/resolvconf/resolv.conf',
    'systemd_stub': '/run/systemd/resolve/stub-resolv.conf',
    'systemd_resolv': '/run/systemd/resolve/resolv.conf',
    'nm_dropin': '/etc/NetworkManager/conf.d/90-dns-default.conf',
    'backup_dir': '/root/resolvconf-backups',
    'proc_version': '/proc/version',
    'manage_packages': True,
    'supported_platforms': [{'id': 'ubuntu', 'version_id': '22.04'}],
}

ENV_OVERRIDES = {'primary': 'DNS1', 'secondary': 'DNS2'}

NM_DROPIN_CONTENT = """[main]
# Use resolvconf to manage /etc/resolv.conf (not systemd-resolved)
dns=default
"""

APT_ENV = {'DEBIAN_FRONTEND': 'noninteractive'}


def resolve_nameservers(context: TweakContext) -> Tuple[str, str]:
    """Validate the configured addresses and return them as (primary, secondary)"""
    addresses = []
    for key in ('primary', 'secondary'):
        value = str(context.settings.get(key) or '').strip()
        try:
            addresses.append(str(ipaddress.ip_address(value)))
        except ValueError:
            raise ConfigurationError(f"Invalid {key} DNS address: {value!r}") from None

    primary, secondary = addresses
    if primary == secondary:
        raise ConfigurationError(f"Primary and secondary DNS must differ (both {primary})")
    return primary, secondary


FRAGMENT_STAMP = "# Added by net-tweaker on "
FRAGMENT_HEADING = "# Primary and secondary DNS:"


def render_fragment(sentinel: str, primary: str, secondary: str) -> List[str]:
    timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    return [
        sentinel,
        f"{FRAGMENT_STAMP}{timestamp}",
        FRAGMENT_HEADING,
        f"nameserver {primary}",
        f"nameserver {secondary}",
    ]


def nameserver_entries(lines: List[str]) -> List[Tuple[int, str]]:
    """(1-based line number, address) for every nameserver directive"""
    entries = []
    for number, line in enumerate(lines, start=1):
        fields = line.split()
        if len(fields) >= 2 and fields[0] == 'nameserver':
            entries.append((number, fields[1]))
    return entries


def verify_nameserver_order(lines: List[str], primary: str, secondary: str) -> Tuple[int, int]:
    """Check that primary is the first nameserver and precedes secondary.

    Returns:
        The line numbers of primary and secondary.

    Raises:
        VerificationFailedError: an entry is missing or out of order.
    """
    entries = nameserver_entries(lines)
    if not entries:
        raise VerificationFailedError("No nameserver lines found in the resolver configuration")

    first_line, first_address = entries[0]
    if first_address != primary:
        raise VerificationFailedError(
            f"Expected {primary} as the first nameserver, found {first_address} on line {first_line}"
        )

    primary_line = first_line
    secondary_lines = [number for number, address in entries if address == secondary]
    if not secondary_lines:
        raise VerificationFailedError(f"Secondary nameserver {secondary} is missing")

    secondary_line = secondary_lines[0]
    if secondary_line <= primary_line:
        raise VerificationFailedError(
            f"Nameserver {secondary} (line {secondary_line}) precedes {primary} (line {primary_line})"
        )
    return primary_line, secondary_line


def strip_fragment(lines: List[str], sentinel: str) -> List[str]:
    """Remove the managed fragment: the sentinel, its two comments and its two nameservers.

    Fragment lines are matched in the order render_fragment writes them;
    the first line that does not fit ends the fragment, so anything added
    after it is kept.
    """
    kept: List[str] = []
    expected: List[str] = []
    nameservers = 0
    for line in lines:
        stripped = line.strip()
        if stripped == sentinel:
            expected = [FRAGMENT_STAMP, FRAGMENT_HEADING]
            nameservers = 2
            continue
        if expected and stripped.startswith(expected[0]):
            expected.pop(0)
            continue
        if nameservers and stripped.split()[:1] == ['nameserver']:
            expected = []
            nameservers -= 1
            continue
        expected = []
        nameservers = 0
        kept.append(line)
    return kept


def _head(context: TweakContext) -> TargetFile:
    return TargetFile(context.settings['head_file'], backup_dir=context.settings.get('backup_dir'))


def _sentinel(context: TweakContext) -> str:
    return str(context.settings['sentinel']).strip()


def _run_required(context: TweakContext, cmd: List[str], timeout: int = 60, env=None):
    code, _, stderr = context.run_command(cmd, timeout=timeout, env=env)
    if code != 0:
        raise CommandFailedError(cmd, code, stderr)


def _run_optional(context: TweakContext, cmd: List[str], timeout: int = 60, env=None) -> bool:
    code, _, stderr = context.run_command(cmd, timeout=timeout, env=env)
    if code != 0:
        context.logger.warning(f"{' '.join(cmd)} returned {code}; continuing. {stderr.strip()}")
    return code == 0


def _wsl_notice(context: TweakContext):
    try:
        with open(context.settings['proc_version'], 'r') as f:
            version = f.read()
    except OSError:
        return

    if re.search(r'(microsoft|wsl)', version, re.IGNORECASE):
        context.logger.warning("WSL detected. Windows often auto-generates /etc/resolv.conf.")
        context.logger.warning("If DNS doesn't stick, set in /etc/wsl.conf: [network] "
                               "generateResolvConf=false, then recreate /etc/resolv.conf.")


def _ensure_packages(context: TweakContext):
    context.say("Refreshing APT metadata...")
    _run_required(context, ['apt-get', 'update', '-y'], timeout=600, env=APT_ENV)
    context.say("Installing resolvconf...")
    _run_required(context, ['apt-get', 'install', '-y', 'resolvconf'], timeout=600, env=APT_ENV)


def _disable_systemd_resolved(context: TweakContext):
    enabled, _, _ = context.run_command(['systemctl', 'is-enabled', 'systemd-resolved'])
    active, _, _ = context.run_command(['systemctl', 'is-active', 'systemd-resolved'])
    if enabled == 0 or active == 0:
        context.say("Disabling and stopping systemd-resolved...")
        _run_required(context, ['systemctl', 'disable', '--now', 'systemd-resolved'])
    else:
        context.say("systemd-resolved already disabled.")


def _has_networkmanager(context: TweakContext) -> bool:
    code, stdout, _ = context.run_command(['systemctl', 'list-unit-files'])
    if code != 0:
        return False
    return any(line.startswith('NetworkManager.service') for line in stdout.splitlines())


def _configure_networkmanager(context: TweakContext):
    if not _has_networkmanager(context):
        context.say("NetworkManager not installed; skipping NetworkManager configuration.")
        return

    context.say("Configuring NetworkManager to use resolvconf (dns=default)...")
    safe_write_file(context.settings['nm_dropin'], NM_DROPIN_CONTENT)
    context.say("Restarting NetworkManager...")
    _run_optional(context, ['systemctl', 'restart', 'NetworkManager'])


def _point_resolv_conf(context: TweakContext, target: str):
    """Make /etc/resolv.conf a symlink to target, backing up whatever was there"""
    resolv_conf = Path(context.settings['resolv_conf'])
    target_path = Path(target)
    if not target_path.exists():
        target_path.parent.mkdir(parents=True, exist_ok=True)
        target_path.touch()

    if resolv_conf.is_symlink() or resolv_conf.exists():
        if os.path.realpath(str(resolv_conf)) == os.path.realpath(str(target_path)):
            context.say(f"{resolv_conf} already points to {target}")
            return
        context.say(f"Repointing {resolv_conf} -> {target}")
        create_timestamped_backup(resolv_conf, context.settings.get('backup_dir'))
    else:
        context.say(f"Creating {resolv_conf} symlink to {target}")

    replace_symlink(resolv_conf, target)


def detect(context: TweakContext) -> MarkerState:
    """PRESENT only when the head fragment already pins the requested order.

    A fragment holding other addresses counts as ABSENT and is rewritten
    on install.
    """
    head = _head(context)
    state = context.patcher.detect(head, _sentinel(context))
    if state is not MarkerState.PRESENT:
        return state

    primary, secondary = resolve_nameservers(context)
    addresses = [address for _, address in nameserver_entries(head.read_lines())]
    if addresses == [primary, secondary]:
        return MarkerState.PRESENT
    context.logger.debug(f"Head fragment lists {addresses}, wanted {[primary, secondary]}")
    return MarkerState.ABSENT


def install(context: TweakContext) -> PatchResult:
    primary, secondary = resolve_nameservers(context)
    head = _head(context)
    sentinel = _sentinel(context)

    with file_lock(head.lock_path):
        count = context.patcher.count_sentinels(head, sentinel)
        if count > 1:
            raise InconsistentMarkerStateError(head.path, sentinel, count)
        if detect(context) is MarkerState.PRESENT:
            context.logger.info(f"{head.path} already pins {primary} then {secondary}")
            return PatchResult(Outcome.ALREADY_INSTALLED, str(head.path))

        if not context.confirmed:
            return PatchResult(Outcome.CANCELLED, str(head.path))

        _wsl_notice(context)
        if context.settings.get('manage_packages', True):
            _ensure_packages(context)
        _disable_systemd_resolved(context)
        _configure_networkmanager(context)
        _point_resolv_conf(context, context.settings['resolvconf_output'])

        context.say(f"Writing static DNS to {head.path} (placed at top of {context.settings['resolv_conf']})...")
        backup_path = create_timestamped_backup(head.path, head.backup_dir)
        fragment = render_fragment(sentinel, primary, secondary)
        safe_write_file(head.path, '\n'.join(fragment) + '\n', head.encoding)

        context.patcher.apply(CommandReloader(context.runner, [['resolvconf', '-u']],
                                              "regenerate resolv.conf via resolvconf"))

        merged = TargetFile(context.settings['resolv_conf']).read_lines()
        primary_line, secondary_line = verify_nameserver_order(merged, primary, secondary)
        context.say(f"✓ {primary} on line {primary_line}, {secondary} on line {secondary_line}",
                    Colors.BRIGHT_GREEN)

    return PatchResult(Outcome.INSTALLED, str(head.path), backup_path)


def uninstall(context: TweakContext) -> PatchResult:
    """Go back to systemd-resolved and drop the managed fragment"""
    head = _head(context)
    sentinel = _sentinel(context)

    with file_lock(head.lock_path):
        state = context.patcher.detect(head, sentinel)
        if state is MarkerState.INCONSISTENT:
            raise InconsistentMarkerStateError(head.path, sentinel,
                                               context.patcher.count_sentinels(head, sentinel))
        if state is MarkerState.ABSENT:
            context.logger.info(f"No managed fragment in {head.path}")
            return PatchResult(Outcome.NOT_INSTALLED, str(head.path))

        if not context.confirmed:
            return PatchResult(Outcome.CANCELLED, str(head.path))

        context.say("Reverting: re-enabling systemd-resolved and removing resolvconf...")
        # systemd-resolved first so DNS keeps working during removal
        _run_required(context, ['systemctl', 'enable', '--now', 'systemd-resolved'])

        stub = Path(context.settings['systemd_stub'])
        link_target = stub if stub.exists() else Path(context.settings['systemd_resolv'])
        create_timestamped_backup(context.settings['resolv_conf'], context.settings.get('backup_dir'))
        replace_symlink(context.settings['resolv_conf'], link_target)

        backup_path = create_timestamped_backup(head.path, head.backup_dir)
        remaining = strip_fragment(head.read_lines(), sentinel)
        safe_write_file(head.path, ''.join(f"{line}\n" for line in remaining), head.encoding)

        if context.settings.get('manage_packages', True):
            if not _run_optional(context, ['apt-get', 'purge', '-y', 'resolvconf'], timeout=600, env=APT_ENV):
                context.say("Could not purge resolvconf (maybe not installed).", Colors.YELLOW)

        nm_dropin = Path(context.settings['nm_dropin'])
        if nm_dropin.exists():
            nm_dropin.unlink()
            _run_optional(context, ['systemctl', 'restart', 'NetworkManager'])

        context.say("Revert complete.")

    return PatchResult(Outcome.UNINSTALLED, str(head.path), backup_path)


def status(context: TweakContext):
    """Show where /etc/resolv.conf points and what it and the head fragment contain"""
    primary, secondary = resolve_nameservers(context)
    resolv_conf = Path(context.settings['resolv_conf'])
    head = _head(context)

    context.say("")
    context.say("=== DNS Status ===", Colors.BOLD)
    context.say(f"Wanted DNS (top of {resolv_conf}): {primary}, {secondary}")
    context.say(f"Managed fragment: {detect(context).value}")
    context.say("")

    if resolv_conf.is_symlink():
        context.say(f"{resolv_conf} -> {os.readlink(str(resolv_conf))}")
    elif resolv_conf.exists():
        context.say(f"{resolv_conf} is a regular file")
    else:
        context.say(f"{resolv_conf} is missing", Colors.YELLOW)

    context.say("")
    context.say(f"First few lines of {resolv_conf}:")
    for line in TargetFile(resolv_conf).read_lines()[:10]:
        context.say(line)

    context.say("")
    context.say(f"Contents of {head.path}:")
    if head.exists():
        for line in head.read_lines()[:50]:
            context.say(line)
    else:
        context.say("(no head file)")
    context.say("")
