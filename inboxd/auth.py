"""
Auth Store - client credentials, per-account tokens and the account directory
"""

import json
import logging
import os
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from inboxd import config
from inboxd.errors import AuthRevoked, NetworkError, UsageError
from inboxd.models import Account, TokenSet
from inboxd.store import read_json, write_json, update_json, remove_file, ensure_dir


logger = logging.getLogger(__name__)

DEFAULT_TOKEN_URI = 'https://oauth2.googleapis.com/token'
ACCOUNT_NAME_PATTERN = re.compile(r'^[A-Za-z0-9._@+-]+$')


def _expiry_to_ms(expiry: Optional[datetime]) -> Optional[int]:
    """google-auth keeps expiry as a naive UTC datetime"""
    if expiry is None:
        return None
    return int(expiry.replace(tzinfo=timezone.utc).timestamp() * 1000)


def _ms_to_expiry(expiry_ms: Optional[int]) -> Optional[datetime]:
    if expiry_ms is None:
        return None
    return datetime.fromtimestamp(expiry_ms / 1000, tz=timezone.utc).replace(tzinfo=None)


class AuthStore:
    """Persists OAuth outputs; the only component that mutates tokens"""

    def __init__(self, config_dir: Optional[Path] = None, refresh_threshold: float = config.TOKEN_REFRESH_THRESHOLD_SECONDS):
        self.config_dir = Path(config_dir) if config_dir else config.config_dir()
        self.refresh_threshold = refresh_threshold

    # === Paths ===

    @property
    def accounts_path(self) -> Path:
        return self.config_dir / config.ACCOUNTS_FILE

    def token_path(self, name: str) -> Path:
        return self.config_dir / config.token_file(name)

    def state_path(self, name: str) -> Path:
        return self.config_dir / config.state_file(name)

    def credentials_path(self) -> Path:
        """Explicit env path, then ./credentials.json, then the config directory"""
        explicit = os.getenv(config.ENV_CREDENTIALS_PATH)
        if explicit:
            return Path(explicit).expanduser()

        local_path = Path.cwd() / config.CREDENTIALS_FILE
        if local_path.exists():
            return local_path

        return self.config_dir / config.CREDENTIALS_FILE

    # === Client credentials ===

    def has_credentials(self) -> bool:
        return self.credentials_path().exists()

    @staticmethod
    def validate_credentials_file(path: Path) -> Tuple[bool, Optional[str]]:
        """Check a downloaded OAuth client file, returns (valid, error)"""
        path = Path(path)
        if not path.exists():
            return False, 'File not found'

        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, ValueError) as error:
            return False, f'Invalid JSON: {error}'

        if not isinstance(data, dict) or not (data.get('installed') or data.get('web')):
            return False, 'Invalid format: missing "installed" or "web" key. Make sure you downloaded OAuth Desktop app credentials.'

        key = data.get('installed') or data.get('web')
        if not key.get('client_id') or not key.get('client_secret'):
            return False, 'Invalid format: missing client_id or client_secret'

        return True, None

    def install_credentials(self, source: Path) -> Path:
        """Copy a validated client file into the config directory"""
        ensure_dir(self.config_dir)
        destination = self.config_dir / config.CREDENTIALS_FILE
        shutil.copyfile(source, destination)
        os.chmod(destination, 0o600)
        return destination

    def client_config(self) -> Dict:
        path = self.credentials_path()
        data = read_json(path, None)
        if not isinstance(data, dict) or not (data.get('installed') or data.get('web')):
            raise UsageError(
                f"credentials.json not found or invalid at {path}\n"
                f"Run 'inbox setup' to configure Gmail API access."
            )
        return data.get('installed') or data.get('web')

    # === Account directory ===

    def _load_accounts(self) -> Dict:
        data = read_json(self.accounts_path, {'accounts': [], 'defaultAccount': None})
        if not isinstance(data, dict) or not isinstance(data.get('accounts'), list):
            return {'accounts': [], 'defaultAccount': None}
        return data

    def list_accounts(self) -> List[Account]:
        return [
            Account(name=a.get('name'), email=a.get('email', ''))
            for a in self._load_accounts()['accounts']
            if a.get('name')
        ]

    def get_account(self, name: str) -> Optional[Account]:
        for account in self.list_accounts():
            if account.name == name:
                return account
        return None

    def add_account(self, name: str, email: str, tokens: Optional[TokenSet] = None) -> Account:
        """Register (or update the email of) an account, keeping insertion order"""
        if not name or not ACCOUNT_NAME_PATTERN.match(name):
            raise UsageError(f"Invalid account name '{name}'. Use letters, digits, '.', '_', '-', '@' or '+'.")

        if tokens is not None:
            self.save_tokens(name, tokens)

        def mutate(data):
            if not isinstance(data, dict) or not isinstance(data.get('accounts'), list):
                data = {'accounts': [], 'defaultAccount': None}
            existing = next((a for a in data['accounts'] if a.get('name') == name), None)
            if existing:
                existing['email'] = email
            else:
                data['accounts'].append({'name': name, 'email': email})
            if not data.get('defaultAccount'):
                data['defaultAccount'] = name
            return data

        update_json(self.accounts_path, {'accounts': [], 'defaultAccount': None}, mutate)
        logger.info(f"Registered account {name} ({email})")
        return Account(name=name, email=email)

    def remove_account(self, name: str) -> bool:
        """Forget an account and delete its token and state files"""
        removed = False

        def mutate(data):
            nonlocal removed
            if not isinstance(data, dict) or not isinstance(data.get('accounts'), list):
                data = {'accounts': [], 'defaultAccount': None}
            remaining = [a for a in data['accounts'] if a.get('name') != name]
            removed = len(remaining) != len(data['accounts'])
            data['accounts'] = remaining
            if data.get('defaultAccount') == name:
                data['defaultAccount'] = remaining[0]['name'] if remaining else None
            return data

        update_json(self.accounts_path, {'accounts': [], 'defaultAccount': None}, mutate)
        remove_file(self.token_path(name))
        remove_file(self.state_path(name))
        return removed

    def remove_all_accounts(self) -> int:
        names = [a.name for a in self.list_accounts()]
        for name in names:
            remove_file(self.token_path(name))
            remove_file(self.state_path(name))
        write_json(self.accounts_path, {'accounts': [], 'defaultAccount': None})
        return len(names)

    def default_account(self) -> str:
        data = self._load_accounts()
        if data.get('defaultAccount'):
            return data['defaultAccount']
        if data['accounts']:
            return data['accounts'][0]['name']
        return 'default'

    def is_configured(self) -> bool:
        return self.has_credentials() and len(self.list_accounts()) > 0

    # === Tokens ===

    def get_tokens(self, name: str) -> Optional[TokenSet]:
        return TokenSet.from_dict(read_json(self.token_path(name), None))

    def save_tokens(self, name: str, tokens: TokenSet) -> None:
        write_json(self.token_path(name), tokens.to_dict())

    def delete_tokens(self, name: str) -> None:
        remove_file(self.token_path(name))

    def rename_tokens(self, old_name: str, new_name: str) -> None:
        old_path = self.token_path(old_name)
        if old_path.exists():
            os.replace(old_path, self.token_path(new_name))

    # === OAuth ===

    def authorize(self, name: str) -> TokenSet:
        """Run the browser consent flow and persist the resulting tokens"""
        path = self.credentials_path()
        if not path.exists():
            raise UsageError(
                f"credentials.json not found at {path}\n"
                f"Run 'inbox setup' to configure Gmail API access."
            )

        flow = InstalledAppFlow.from_client_secrets_file(str(path), config.SCOPES)
        creds = flow.run_local_server(port=0)
        tokens = TokenSet(
            refresh_token=creds.refresh_token,
            access_token=creds.token,
            expiry_epoch_ms=_expiry_to_ms(creds.expiry),
            scope=' '.join(creds.scopes or config.SCOPES),
        )
        self.save_tokens(name, tokens)
        logger.info(f"Stored new tokens for account {name}")
        return tokens

    def credentials(self, name: str, force_refresh: bool = False) -> Credentials:
        """Credentials for API calls, refreshed when close to expiry"""
        tokens = self.get_tokens(name)
        if tokens is None:
            raise AuthRevoked(name, f"No stored tokens for account '{name}'. Run: inbox auth -a {name}")

        client = self.client_config()
        creds = Credentials(
            token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_uri=client.get('token_uri', DEFAULT_TOKEN_URI),
            client_id=client.get('client_id'),
            client_secret=client.get('client_secret'),
            scopes=tokens.scope.split() if tokens.scope else config.SCOPES,
        )
        creds.expiry = _ms_to_expiry(tokens.expiry_epoch_ms)

        if force_refresh or tokens.expires_within(self.refresh_threshold):
            self._refresh(name, creds, tokens)

        return creds

    def _refresh(self, name: str, creds: Credentials, tokens: TokenSet) -> None:
        logger.info(f"Refreshing access token for account {name}")
        try:
            creds.refresh(Request())
        except RefreshError as error:
            if 'invalid_grant' in str(error):
                logger.warning(f"Refresh token for {name} was rejected, deleting stored tokens")
                self.delete_tokens(name)
                raise AuthRevoked(name) from error
            logger.error(f"Token refresh for {name} failed: {error}")
            raise AuthRevoked(name, f"Token refresh for account '{name}' failed ({error}). Re-run: inbox auth -a {name}") from error
        except TransportError as error:
            raise NetworkError(f"Token refresh failed: {error}") from error

        self.save_tokens(name, TokenSet(
            refresh_token=creds.refresh_token or tokens.refresh_token,
            access_token=creds.token,
            expiry_epoch_ms=_expiry_to_ms(creds.expiry),
            scope=tokens.scope,
        ))
