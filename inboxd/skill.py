"""
Skill installer - copies the packaged assistant instructions into ~/.claude/skills
"""

import re
import shutil
import hashlib
import logging
from pathlib import Path
from typing import Dict, Optional


logger = logging.getLogger(__name__)

SKILL_NAME = 'inbox-assistant'
SOURCE_MARKER = 'inboxd'
SKILL_FILE = 'SKILL.md'
SKILL_SOURCE_DIR = Path(__file__).parent / 'skills' / SKILL_NAME


def default_destination() -> Path:
    return Path.home() / '.claude' / 'skills' / SKILL_NAME


def file_hash(path: Path) -> Optional[str]:
    try:
        return hashlib.md5(Path(path).read_bytes()).hexdigest()
    except OSError:
        return None


def skill_source(path: Path) -> Optional[str]:
    """The `source:` value of a SKILL.md front matter block"""
    try:
        content = Path(path).read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError):
        return None
    front_matter = re.match(r'^---\s*\n(.*?)\n---', content, re.DOTALL)
    if not front_matter:
        return None
    match = re.search(r'^source:\s*["\']?([^"\'\n]+)["\']?\s*$', front_matter.group(1), re.MULTILINE)
    return match.group(1).strip() if match else None


class SkillInstaller:
    """Install, update and remove the assistant skill directory"""

    def __init__(self, destination: Optional[Path] = None, source_dir: Path = SKILL_SOURCE_DIR):
        self.destination = Path(destination) if destination else default_destination()
        self.source_dir = Path(source_dir)

    def status(self) -> Dict:
        installed_file = self.destination / SKILL_FILE
        installed = installed_file.exists()
        source = skill_source(installed_file) if installed else None
        current_hash = file_hash(installed_file) if installed else None
        source_hash = file_hash(self.source_dir / SKILL_FILE)
        return {
            'installed': installed,
            'isOurs': source == SOURCE_MARKER,
            'source': source,
            'currentHash': current_hash,
            'sourceHash': source_hash,
            'updateAvailable': installed and source == SOURCE_MARKER and current_hash != source_hash,
        }

    def install(self, force: bool = False) -> Dict:
        """Returns {success, action, path, backupPath}; action is installed/updated/unchanged/skipped"""
        if not (self.source_dir / SKILL_FILE).exists():
            raise FileNotFoundError(f'Skill source not found at {self.source_dir}')

        status = self.status()
        if status['installed'] and not status['isOurs'] and not force:
            return {'success': False, 'action': 'skipped', 'reason': 'not_owned', 'path': str(self.destination)}
        if status['installed'] and status['isOurs'] and not status['updateAvailable']:
            return {'success': True, 'action': 'unchanged', 'path': str(self.destination)}

        self.destination.parent.mkdir(parents=True, exist_ok=True)

        backup_content = None
        if status['installed']:
            backup_content = (self.destination / SKILL_FILE).read_bytes()
            shutil.rmtree(self.destination)

        shutil.copytree(self.source_dir, self.destination)

        backup_path = None
        if backup_content is not None:
            backup_path = self.destination / f'{SKILL_FILE}.backup'
            backup_path.write_bytes(backup_content)
            logger.info(f"Previous skill saved to {backup_path}")

        return {
            'success': True,
            'action': 'updated' if status['installed'] else 'installed',
            'path': str(self.destination),
            'backupPath': str(backup_path) if backup_path else None,
        }

    def uninstall(self) -> bool:
        """Remove the skill directory, returns whether it existed"""
        if not self.destination.exists():
            return False
        shutil.rmtree(self.destination)
        return True
