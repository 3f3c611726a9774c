"""
Background service - periodic `inbox check --quiet` via launchd or systemd user timers
"""

import sys
import shutil
import logging
import subprocess
from pathlib import Path
from typing import List, Dict, Optional, Tuple


logger = logging.getLogger(__name__)

SERVICE_LABEL = 'com.inboxd.check'
PLIST_NAME = f'{SERVICE_LABEL}.plist'
SYSTEMD_UNIT = 'inboxd-check'
DEFAULT_INTERVAL_MINUTES = 5


def _inbox_command() -> List[str]:
    """How the scheduler should invoke the CLI"""
    executable = shutil.which('inbox')
    if executable:
        return [executable]
    return [sys.executable, '-m', 'inboxd.cli']


def launch_agents_dir(home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / 'Library' / 'LaunchAgents'


def systemd_user_dir(home: Optional[Path] = None) -> Path:
    return (home or Path.home()) / '.config' / 'systemd' / 'user'


def generate_plist(interval: int = DEFAULT_INTERVAL_MINUTES, command: Optional[List[str]] = None,
                   log_dir: Path = Path('/tmp')) -> str:
    arguments = '\n'.join(f'        <string>{part}</string>' for part in (command or _inbox_command()) + ['check', '--quiet'])
    python_path = Path(sys.executable).parent

    return f"""<?xml version="1.0" encoding="UTF-8"?>
<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" "http://www.apple.com/DTDs/PropertyList-1.0.dtd">
<plist version="1.0">
<dict>
    <key>Label</key>
    <string>{SERVICE_LABEL}</string>
    <key>ProgramArguments</key>
    <array>
{arguments}
    </array>
    <key>StartInterval</key>
    <integer>{interval * 60}</integer>
    <key>RunAtLoad</key>
    <true/>
    <key>StandardOutPath</key>
    <string>{log_dir}/inboxd.log</string>
    <key>StandardErrorPath</key>
    <string>{log_dir}/inboxd.error.log</string>
    <key>EnvironmentVariables</key>
    <dict>
        <key>PATH</key>
        <string>{python_path}:/usr/local/bin:/usr/bin:/bin:/opt/homebrew/bin</string>
    </dict>
</dict>
</plist>
"""


def generate_systemd_units(interval: int = DEFAULT_INTERVAL_MINUTES, command: Optional[List[str]] = None) -> Dict[str, str]:
    """{'<name>.service': ..., '<name>.timer': ...}"""
    exec_start = ' '.join((command or _inbox_command()) + ['check', '--quiet'])
    service = f"""[Unit]
Description=inboxd new mail check

[Service]
Type=oneshot
ExecStart={exec_start}
"""
    timer = f"""[Unit]
Description=Run inboxd check every {interval} minutes

[Timer]
OnBootSec=1min
OnUnitActiveSec={interval}min
Unit={SYSTEMD_UNIT}.service

[Install]
WantedBy=timers.target
"""
    return {f'{SYSTEMD_UNIT}.service': service, f'{SYSTEMD_UNIT}.timer': timer}


def _run(command: List[str]) -> subprocess.CompletedProcess:
    logger.debug(f"Running {' '.join(command)}")
    return subprocess.run(command, capture_output=True, text=True)


def install(interval: int = DEFAULT_INTERVAL_MINUTES, platform: str = sys.platform,
            home: Optional[Path] = None) -> Tuple[bool, str]:
    """Write and load the timer unit for this platform"""
    if interval < 1:
        return False, 'interval must be at least 1 minute'

    if platform == 'darwin':
        directory = launch_agents_dir(home)
        directory.mkdir(parents=True, exist_ok=True)
        plist_path = directory / PLIST_NAME
        plist_path.write_text(generate_plist(interval))

        _run(['launchctl', 'unload', str(plist_path)])
        result = _run(['launchctl', 'load', str(plist_path)])
        if result.returncode != 0:
            return False, result.stderr.strip() or f'failed to load {plist_path}'
        return True, f'installed and loaded {plist_path} (every {interval} minutes)'

    if platform.startswith('linux'):
        directory = systemd_user_dir(home)
        directory.mkdir(parents=True, exist_ok=True)
        for name, content in generate_systemd_units(interval).items():
            (directory / name).write_text(content)

        _run(['systemctl', '--user', 'daemon-reload'])
        result = _run(['systemctl', '--user', 'enable', '--now', f'{SYSTEMD_UNIT}.timer'])
        if result.returncode != 0:
            return False, result.stderr.strip() or 'failed to enable systemd timer'
        return True, f'installed {directory / (SYSTEMD_UNIT + ".timer")} (every {interval} minutes)'

    return False, (
        f'install-service is not supported on {platform}. '
        f'Schedule this instead: */{interval} * * * * {" ".join(_inbox_command())} check --quiet'
    )


def uninstall(platform: str = sys.platform, home: Optional[Path] = None) -> Tuple[bool, str]:
    if platform == 'darwin':
        plist_path = launch_agents_dir(home) / PLIST_NAME
        if not plist_path.exists():
            return False, 'not installed'
        _run(['launchctl', 'unload', str(plist_path)])
        plist_path.unlink(missing_ok=True)
        return True, 'uninstalled'

    if platform.startswith('linux'):
        directory = systemd_user_dir(home)
        units = [directory / name for name in generate_systemd_units().keys()]
        if not any(unit.exists() for unit in units):
            return False, 'not installed'
        _run(['systemctl', '--user', 'disable', '--now', f'{SYSTEMD_UNIT}.timer'])
        for unit in units:
            unit.unlink(missing_ok=True)
        _run(['systemctl', '--user', 'daemon-reload'])
        return True, 'uninstalled'

    return False, f'install-service is not supported on {platform}'
