"""
TCP stack tweak.

Appends a sentinel-tagged block of TCP window and buffer settings to a
sysctl drop-in and reloads kernel parameters with ``sysctl --system``.
Removal filters the same block back out.
"""

from pathlib import Path
from typing import List, Tuple

from net_tweaker import (CallbackReloader, ChainReloader, Colors, CommandReloader,
                         ConfigurationError, MarkerState, PatchResult, Reloader,
                         SettingsBlock, TargetFile, TweakContext,
                         create_timestamped_backup, safe_write_file)

TITLE = "TCP Tweaker"
DESCRIPTION = "TCP window and buffer tuning via a sysctl drop-in"

NOTICE = [
    "This is an experimental tweak. Use at your own risk!",
    "It changes some network settings",
    "to reduce latency and improve speed.",
]

DEFAULTS = {
    'target': '/etc/sysctl.d/99-vpn-optimizer.conf',
    'sentinel': '#PH56',
    'settings': [
        'net.ipv4.tcp_window_scaling = 1',
        'net.core.rmem_max = 16777216',
        'net.core.wmem_max = 16777216',
        'net.ipv4.tcp_rmem = 4096 87380 16777216',
        'net.ipv4.tcp_wmem = 4096 16384 16777216',
        'net.ipv4.tcp_low_latency = 1',
        'net.ipv4.tcp_slow_start_after_idle = 0',
    ],
    # Copy the drop-in over the main sysctl.conf before reloading
    'sync_main_conf': False,
    'main_conf': '/etc/sysctl.conf',
    'backup_dir': None,
    'reload_command': ['sysctl', '--system'],
    'supported_platforms': [],
}

ENV_OVERRIDES = {}


def parse_setting(line: str) -> Tuple[str, str]:
    """Split 'key = value' into its parts"""
    if '=' not in line:
        raise ConfigurationError(f"Not a sysctl setting (expected 'key = value'): {line!r}")
    key, value = line.split('=', 1)
    return key.strip(), value.strip()


def normalize_value(value: str) -> str:
    """sysctl prints multi-value settings tab-separated"""
    return ' '.join(value.split())


def _block(context: TweakContext) -> SettingsBlock:
    lines = [str(line) for line in context.settings['settings']]
    for line in lines:
        parse_setting(line)
    return SettingsBlock(sentinel=str(context.settings['sentinel']), lines=lines)


def _target(context: TweakContext) -> TargetFile:
    return TargetFile(context.settings['target'], backup_dir=context.settings.get('backup_dir'))


def _sync_main_conf(context: TweakContext):
    main_conf = Path(context.settings['main_conf'])
    target = _target(context)
    context.logger.info(f"Syncing {target.path} to {main_conf}")
    create_timestamped_backup(main_conf, context.settings.get('backup_dir'))
    safe_write_file(main_conf, target.path.read_text(encoding=target.encoding))


def build_reloader(context: TweakContext) -> Reloader:
    reloaders: List[Reloader] = []
    if context.settings.get('sync_main_conf'):
        reloaders.append(CallbackReloader(lambda: _sync_main_conf(context),
                                          f"sync {context.settings['main_conf']}"))
    reload_command = context.settings['reload_command']
    if isinstance(reload_command, str):
        reload_command = reload_command.split()
    reloaders.append(CommandReloader(context.runner, [reload_command]))
    return ChainReloader(reloaders)


def detect(context: TweakContext) -> MarkerState:
    return context.patcher.detect(_target(context), str(context.settings['sentinel']))


def install(context: TweakContext) -> PatchResult:
    block = _block(context)
    if context.confirmed:
        context.say("Modifying the following settings:")
        for line in block.lines:
            context.say(f"  {line}", Colors.CYAN)
    return context.patcher.install(_target(context), block, build_reloader(context),
                                   confirmed=context.confirmed)


def uninstall(context: TweakContext) -> PatchResult:
    return context.patcher.uninstall(_target(context), _block(context), build_reloader(context),
                                     confirmed=context.confirmed)


def status(context: TweakContext):
    """Print the marker state and compare live kernel values with the block"""
    target = _target(context)
    block = _block(context)
    state = detect(context)

    context.say(f"Target file: {target.path}")
    context.say(f"Marker {block.sentinel}: {state.value}")
    context.say("Live kernel values:")

    mismatches = 0
    for line in block.lines:
        key, expected = parse_setting(line)
        code, stdout, stderr = context.run_command(['sysctl', '-n', key])
        if code != 0:
            mismatches += 1
            context.say(f"  ✗ {key}: cannot read ({stderr.strip() or 'unknown key'})", Colors.BRIGHT_RED)
            continue

        current = normalize_value(stdout)
        if current == normalize_value(expected):
            context.say(f"  ✓ {key} = {current}", Colors.BRIGHT_GREEN)
        else:
            mismatches += 1
            context.say(f"  ✗ {key} = {current} (block sets {expected})", Colors.BRIGHT_YELLOW)

    if mismatches:
        context.logger.warning(f"{mismatches} setting(s) differ from the block on the running kernel")
