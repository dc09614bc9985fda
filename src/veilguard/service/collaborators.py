"""External collaborators consumed by the trust layer.

Profiles, accounts and owned resources belong to other services; the
trust layer only reads them through ProfileDirectory.
"""

import threading
from datetime import datetime
from typing import Dict, Optional, Protocol, Tuple


class ProfileDirectory(Protocol):
    """Profile-resolution lookup owned by the profile service."""
    
    def persona_for_device(self, device_token: str) -> Optional[str]:
        """Persona registered for a device token, if any."""
        ...
    
    def account_created_at(self, persona_id: str) -> Optional[datetime]:
        """Creation time of the persona's account."""
        ...
    
    def owned_count(self, persona_id: str, action_type: str) -> Optional[int]:
        """Resources the persona currently holds that ``action_type`` would add to."""
        ...


class StaticProfileDirectory:
    """In-process ProfileDirectory for tests and single-node deployments."""
    
    def __init__(self):
        self._lock = threading.Lock()
        self._personas: Dict[str, str] = {}
        self._created: Dict[str, datetime] = {}
        self._owned: Dict[Tuple[str, str], int] = {}
    
    def register(
        self,
        persona_id: str,
        created_at: datetime,
        device_token: Optional[str] = None,
    ) -> None:
        with self._lock:
            self._created[persona_id] = created_at
            if device_token:
                self._personas[device_token] = persona_id
    
    def set_owned(self, persona_id: str, action_type: str, count: int) -> None:
        with self._lock:
            self._owned[(persona_id, action_type)] = count
    
    def persona_for_device(self, device_token: str) -> Optional[str]:
        with self._lock:
            return self._personas.get(device_token)
    
    def account_created_at(self, persona_id: str) -> Optional[datetime]:
        with self._lock:
            return self._created.get(persona_id)
    
    def owned_count(self, persona_id: str, action_type: str) -> Optional[int]:
        with self._lock:
            return self._owned.get((persona_id, action_type), 0)
