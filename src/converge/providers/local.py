"""Provider that keeps resources as JSON documents on the local filesystem.

Used for demos, dry runs of declaration sets and end-to-end tests. It has no
cloud semantics beyond a small schema of immutable and globally unique
attributes for the resource types the example labs declare.
"""

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional, Tuple

from .base import ProviderClient
from converge.utils.errors import ErrorContext, ProviderError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


# resource type -> (immutable attributes, globally unique name attribute)
SCHEMA: Dict[str, Tuple[FrozenSet[str], Optional[str]]] = {
    'bucket': (frozenset({'bucket'}), 'bucket'),
    'dynamodb_table': (frozenset({'name', 'hash_key'}), None),
    'iam_role': (frozenset({'name'}), None),
    'iam_policy': (frozenset({'name'}), None),
    'instance': (frozenset({'ami', 'subnet'}), None),
    'security_group': (frozenset({'name', 'vpc'}), None),
    'config_recorder': (frozenset({'name'}), None),
    'cloudtrail': (frozenset({'name'}), None),
}


class LocalProvider(ProviderClient):
    """Provider storing each resource at ``<root>/<type>/<provider id>.json``."""

    def __init__(self, root: str):
        """
        Initialize LocalProvider.

        Args:
            root: Directory holding resource documents
        """
        self.root = Path(root)
        self._lock = threading.Lock()

    def _path(self, resource_type: str, provider_id: str) -> Path:
        return self.root / resource_type / f"{provider_id}.json"

    def _write(self, path: Path, document: Dict[str, Any]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.parent / f".{path.name}.{uuid.uuid4().hex}.tmp"
        with open(temp_path, "w") as f:
            json.dump(document, f, indent=2, default=str)
        temp_path.replace(path)

    def _read_document(self, resource_type: str, provider_id: str) -> Optional[Dict[str, Any]]:
        path = self._path(resource_type, provider_id)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return json.load(f)

    def _check_unique(self, resource_type: str, attributes: Dict[str, Any], exclude: Optional[str] = None):
        _, unique_attr = SCHEMA.get(resource_type, (frozenset(), None))
        if not unique_attr or unique_attr not in attributes:
            return
        type_dir = self.root / resource_type
        if not type_dir.is_dir():
            return
        for path in type_dir.glob("*.json"):
            if path.stem == exclude:
                continue
            with open(path, "r") as f:
                existing = json.load(f)
            if existing.get('attributes', {}).get(unique_attr) == attributes[unique_attr]:
                raise ProviderError(
                    f"{resource_type} with {unique_attr}={attributes[unique_attr]!r} already exists",
                    context=ErrorContext(resource_type=resource_type, operation='create'),
                )

    def create(self, resource_type: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        provider_id = f"{resource_type}-{uuid.uuid4().hex[:12]}"
        now = datetime.utcnow().isoformat()
        computed = {
            'arn': f"arn:converge:local:{resource_type}/{provider_id}",
            'created_at': now,
        }

        with self._lock:
            self._check_unique(resource_type, attributes)
            self._write(
                self._path(resource_type, provider_id),
                {'type': resource_type, 'attributes': attributes, 'computed': computed},
            )

        logger.debug(f"Created {resource_type} {provider_id}")
        return provider_id, computed

    def read(self, resource_type: str, provider_id: str) -> Optional[Dict[str, Any]]:
        document = self._read_document(resource_type, provider_id)
        if document is None:
            return None
        return {**document.get('attributes', {}), **document.get('computed', {})}

    def update(self, resource_type: str, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            document = self._read_document(resource_type, provider_id)
            if document is None:
                raise ProviderError(
                    f"{resource_type} {provider_id} does not exist",
                    context=ErrorContext(resource_type=resource_type, operation='update'),
                    suggestions=['Run plan with --refresh to recreate resources deleted outside converge'],
                )
            self._check_unique(resource_type, attributes, exclude=provider_id)

            computed = dict(document.get('computed', {}))
            computed['updated_at'] = datetime.utcnow().isoformat()
            self._write(
                self._path(resource_type, provider_id),
                {'type': resource_type, 'attributes': attributes, 'computed': computed},
            )

        logger.debug(f"Updated {resource_type} {provider_id}")
        return computed

    def delete(self, resource_type: str, provider_id: str) -> None:
        path = self._path(resource_type, provider_id)
        with self._lock:
            if path.exists():
                path.unlink()
        logger.debug(f"Deleted {resource_type} {provider_id}")

    def immutable_attributes(self, resource_type: str) -> FrozenSet[str]:
        return SCHEMA.get(resource_type, (frozenset(), None))[0]

    def is_globally_unique(self, resource_type: str) -> bool:
        return SCHEMA.get(resource_type, (frozenset(), None))[1] is not None
