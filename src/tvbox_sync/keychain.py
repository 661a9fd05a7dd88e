"""Secure device credential storage using system keychain."""

import json
import logging
import os
import uuid
from dataclasses import dataclass
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["KeychainManager", "DeviceCredentials", "TOKEN_ENV_VAR"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "TVBox Sync"
ACCOUNT_NAME = "device_credentials"

# Provisioning tools hand the first token to the box through the environment
TOKEN_ENV_VAR = "TVBOX_SYNC_TOKEN"


@dataclass
class DeviceCredentials:
    """Credentials stored in keychain."""

    device_id: str
    api_token: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps({"device_id": self.device_id, "api_token": self.api_token})

    @classmethod
    def from_json(cls, data: str) -> "DeviceCredentials":
        parsed = json.loads(data)
        return cls(device_id=parsed["device_id"], api_token=parsed.get("api_token"))


class KeychainManager:
    """Manages secure credential storage."""

    def __init__(self, service_name: str = SERVICE_NAME):
        """Initialize keychain manager.

        Args:
            service_name: Service name for keychain entries
        """
        self.service_name = service_name

    def store(self, credentials: DeviceCredentials) -> bool:
        """Store credentials in keychain.

        Returns:
            True if stored successfully
        """
        try:
            keyring.set_password(self.service_name, ACCOUNT_NAME, credentials.to_json())
            logger.info(f"Credentials stored for device {credentials.device_id}")
            return True
        except KeyringError as e:
            logger.error(f"Failed to store credentials: {e}")
            return False

    def load(self) -> Optional[DeviceCredentials]:
        """Load credentials from keychain.

        Returns:
            DeviceCredentials if found, None otherwise
        """
        try:
            data = keyring.get_password(self.service_name, ACCOUNT_NAME)
            if data:
                return DeviceCredentials.from_json(data)
            return None
        except KeyringError as e:
            logger.error(f"Failed to load credentials: {e}")
            return None
        except (json.JSONDecodeError, KeyError) as e:
            logger.error(f"Invalid credential format: {e}")
            return None

    def delete(self) -> bool:
        """Delete stored credentials.

        Returns:
            True if deleted (or didn't exist)
        """
        try:
            keyring.delete_password(self.service_name, ACCOUNT_NAME)
            logger.info("Credentials deleted")
            return True
        except PasswordDeleteError:
            # Password didn't exist
            return True
        except KeyringError as e:
            logger.error(f"Failed to delete credentials: {e}")
            return False

    def has_credentials(self) -> bool:
        """Check if credentials are stored."""
        return self.load() is not None

    def ensure(self, device_id: Optional[str] = None) -> DeviceCredentials:
        """Load credentials, provisioning them on first run.

        A new device id is generated unless one is given; the token is taken
        from the TVBOX_SYNC_TOKEN environment variable if set. A token found
        in the environment replaces a stored one.
        """
        credentials = self.load()
        env_token = os.environ.get(TOKEN_ENV_VAR)
        if credentials is None:
            credentials = DeviceCredentials(
                device_id=device_id or uuid.uuid4().hex, api_token=env_token
            )
            logger.info(f"Provisioned device {credentials.device_id}")
            self.store(credentials)
        elif env_token and env_token != credentials.api_token:
            credentials.api_token = env_token
            self.store(credentials)
        return credentials
