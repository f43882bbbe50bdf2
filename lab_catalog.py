"""
Lab Catalog for EduSec Labs
Maps a lab id to the container image it runs and the port it serves on
"""

import json
import logging
from typing import Any, Dict, List, Optional

from session_errors import ResourceNotFound

logger = logging.getLogger('LabCatalog')

WORKSTATION_RESOURCE_ID = 'kali'

# Keep the workstation alive without relying on the image's entrypoint
WORKSTATION_COMMAND = ['sh', '-c', 'while true; do sleep 3600; done']

# Using real public images for instant playability
DEFAULT_LABS: Dict[str, Dict[str, Any]] = {
    'dvwa': {'image': 'vulnerables/web-dvwa', 'name': 'DVWA (Damn Vulnerable Web App)', 'port': 80},
    'juice-shop': {'image': 'bkimminich/juice-shop', 'name': 'OWASP Juice Shop', 'port': 3000},
    'mutillidae': {'image': 'citizenstig/nowasp', 'name': 'Mutillidae II', 'port': 80},
    'metasploitable': {'image': 'tleemcjr/metasploitable2', 'name': 'Metasploitable 2', 'port': 80},
    'netrunner-101': {'image': 'nginx:alpine', 'name': 'NetRunner', 'port': 80},
    'penguin-ops': {'image': 'linuxserver/openssh-server', 'name': 'Linux Ops', 'port': 2222},
    # Theory-only rooms have no container
    'phishing-awareness': {'image': None, 'name': 'Phishing Awareness'},
}


class CatalogEntry:
    """A lab (or the workstation) as far as the session service cares"""

    def __init__(
        self,
        resource_id: str,
        image: Optional[str],
        internal_port: int,
        name: Optional[str] = None,
        command: Optional[List[str]] = None,
        init: bool = False
    ):
        self.resource_id = resource_id
        self.image = image
        self.internal_port = internal_port
        self.name = name or resource_id
        self.command = command
        self.init = init

    @property
    def is_containerized(self) -> bool:
        return bool(self.image)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.resource_id,
            'name': self.name,
            'image': self.image,
            'port': self.internal_port,
            'containerized': self.is_containerized,
        }

    def __repr__(self):
        return f"<CatalogEntry {self.resource_id} image={self.image!r} port={self.internal_port}>"


class LabCatalog:
    """
    In-memory lab catalog.

    Entries come from DEFAULT_LABS, optionally extended or overridden by a JSON
    file of the same shape: {"<lab id>": {"image": ..., "port": ..., "name": ...}}.
    A lab without a declared port falls back to ``default_internal_port``.
    """

    def __init__(
        self,
        labs: Optional[Dict[str, Dict[str, Any]]] = None,
        default_internal_port: int = 80,
        workstation_image: str = 'alpine:3.19',
        workstation_internal_port: int = 22
    ):
        self.default_internal_port = default_internal_port
        self._entries: Dict[str, CatalogEntry] = {}
        for resource_id, data in (DEFAULT_LABS if labs is None else labs).items():
            self.add(resource_id, data)

        self._workstation = CatalogEntry(
            resource_id=WORKSTATION_RESOURCE_ID,
            image=workstation_image,
            internal_port=workstation_internal_port,
            name='Attacker Workstation',
            command=WORKSTATION_COMMAND,
            init=True
        )

    @classmethod
    def from_config(cls, config) -> 'LabCatalog':
        catalog = cls(
            default_internal_port=config.DEFAULT_INTERNAL_PORT,
            workstation_image=config.WORKSTATION_IMAGE,
            workstation_internal_port=config.WORKSTATION_INTERNAL_PORT
        )
        if config.LAB_CATALOG_PATH:
            catalog.load_file(config.LAB_CATALOG_PATH)
        return catalog

    def add(self, resource_id: str, data: Dict[str, Any]) -> CatalogEntry:
        port = data.get('port')
        entry = CatalogEntry(
            resource_id=str(resource_id),
            image=data.get('image') or None,
            internal_port=int(port) if port else self.default_internal_port,
            name=data.get('name'),
            command=data.get('command')
        )
        self._entries[entry.resource_id] = entry
        return entry

    def load_file(self, path: str) -> int:
        """Merge labs from a JSON file, returns the number of entries loaded"""
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Lab catalog {path} must contain a JSON object")
        for resource_id, entry in data.items():
            self.add(resource_id, entry)
        logger.info(f"📚 Loaded {len(data)} lab(s) from {path}")
        return len(data)

    def get(self, resource_id: str) -> CatalogEntry:
        entry = self._entries.get(str(resource_id))
        if entry is None:
            raise ResourceNotFound(f"Lab not found: {resource_id}")
        return entry

    def workstation(self) -> CatalogEntry:
        return self._workstation

    def list(self) -> List[CatalogEntry]:
        return list(self._entries.values())
