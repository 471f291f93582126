"""
Domain registry.

Persists one DomainRecord per domain in <config_dir>/domains.yaml, keyed by
domain name. The file keeps the camelCase keys used by existing installs.
"""

import os
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from .config_loader import ConfigurationError
from .helpers import normalize_web_root
from .logger import get_logger


DEFAULT_WEB_ROOT = "/var/www/html"
DEFAULT_SSH_PORT = 22
DEFAULT_SSH_USERNAME = "root"
DEFAULT_REMOTE_NGINX_CONF_DIR = "/etc/nginx/conf.d"
DEFAULT_REMOTE_CERTS_DIR = "/opt/auto-cert/certs"

REGISTRY_HEADER = """# Domain registry
# Maintained by auto-cert
#
#   issuedAt: last successful issuance (empty until the first certificate)
#   email:    ACME contact used for the last issuance
#   webRoot:  per-domain web root (overrides the global setting)
#   ssh:      remote host the certificate and nginx config are deployed to
"""


@dataclass(frozen=True)
class RemoteTarget:
    """Connection and layout settings of a remote host."""
    host: str
    port: int = DEFAULT_SSH_PORT
    username: str = DEFAULT_SSH_USERNAME
    private_key: Optional[str] = None
    password: Optional[str] = None
    remote_web_root: Optional[str] = None
    remote_nginx_conf_dir: str = DEFAULT_REMOTE_NGINX_CONF_DIR
    remote_certs_dir: str = DEFAULT_REMOTE_CERTS_DIR

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RemoteTarget":
        """
        Build a RemoteTarget from a registry ``ssh`` mapping.

        Raises:
            ConfigurationError: If the host is missing or the port is invalid
        """
        host = data.get("host")
        if not host:
            raise ConfigurationError("ssh.host is required for a remote domain")
        try:
            port = int(data.get("port") or DEFAULT_SSH_PORT)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid ssh.port: {data.get('port')!r}")

        return cls(
            host=host,
            port=port,
            username=data.get("username") or DEFAULT_SSH_USERNAME,
            private_key=data.get("privateKey"),
            password=data.get("password"),
            remote_web_root=data.get("remoteWebRoot"),
            remote_nginx_conf_dir=data.get("remoteNginxConfDir") or DEFAULT_REMOTE_NGINX_CONF_DIR,
            remote_certs_dir=data.get("remoteCertsDir") or DEFAULT_REMOTE_CERTS_DIR,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "privateKey": self.private_key,
            "password": self.password,
            "remoteWebRoot": self.remote_web_root,
            "remoteNginxConfDir": self.remote_nginx_conf_dir,
            "remoteCertsDir": self.remote_certs_dir,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class DomainRecord:
    """Registry entry of one domain."""
    domain: str
    issued_at: Optional[str] = None
    email: Optional[str] = None
    web_root: Optional[str] = None
    ssh: Optional[RemoteTarget] = None

    @property
    def is_remote(self) -> bool:
        return self.ssh is not None

    def resolve_web_root(
        self,
        override: Optional[str],
        default: Optional[str],
        remote: bool = False,
    ) -> str:
        """
        Web root by precedence: explicit override, the remote web root
        (remote mode only), the record, the configured default, then
        /var/www/html. Trailing slashes are stripped.
        """
        remote_web_root = self.ssh.remote_web_root if (remote and self.ssh) else None
        web_root = override or remote_web_root or self.web_root or default or DEFAULT_WEB_ROOT
        return normalize_web_root(web_root)

    @classmethod
    def from_dict(cls, domain: str, data: Optional[Dict[str, Any]]) -> "DomainRecord":
        data = data or {}
        ssh_data = data.get("ssh")
        issued_at = data.get("issuedAt")
        if isinstance(issued_at, datetime):
            # PyYAML turns unquoted timestamps into datetimes
            issued_at = issued_at.isoformat()
        return cls(
            domain=domain,
            issued_at=issued_at,
            email=data.get("email"),
            web_root=data.get("webRoot"),
            ssh=RemoteTarget.from_dict(ssh_data) if ssh_data else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"issuedAt": self.issued_at, "email": self.email}
        if self.web_root:
            data["webRoot"] = self.web_root
        if self.ssh:
            data["ssh"] = self.ssh.to_dict()
        return data


class DomainRegistry:
    """
    YAML-backed store of DomainRecords.

    The file is re-read on every access, so several commands in one process
    always see each other's updates.
    """

    def __init__(self, path: str):
        self.path = Path(path)

    def _load_raw(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in domain registry {self.path}: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Domain registry must contain a mapping: {self.path}")
        return data

    def _save_raw(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        body = yaml.safe_dump(data, default_flow_style=False, sort_keys=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        with open(tmp_path, "w") as f:
            f.write(REGISTRY_HEADER + "\n" + body)
        os.replace(tmp_path, self.path)

    def get(self, domain: str) -> Optional[DomainRecord]:
        raw = self._load_raw()
        if domain not in raw:
            return None
        return DomainRecord.from_dict(domain, raw[domain])

    def get_or_blank(self, domain: str) -> DomainRecord:
        return self.get(domain) or DomainRecord(domain=domain)

    def domains(self) -> List[str]:
        return sorted(self._load_raw().keys())

    def save(self, record: DomainRecord) -> None:
        raw = self._load_raw()
        raw[record.domain] = record.to_dict()
        self._save_raw(raw)

    def add(
        self,
        domain: str,
        web_root: Optional[str] = None,
        ssh: Optional[RemoteTarget] = None,
    ) -> DomainRecord:
        """
        Register a domain, or update the web root / remote target of an
        existing entry. Issuance history is kept.
        """
        existing = self.get(domain)
        if existing:
            record = replace(
                existing,
                web_root=web_root or existing.web_root,
                ssh=ssh or existing.ssh,
            )
            get_logger().info(f"Domain already registered: {domain} (updating)")
        else:
            record = DomainRecord(domain=domain, web_root=web_root, ssh=ssh)
        self.save(record)
        return record

    def record_issuance(
        self,
        domain: str,
        email: Optional[str],
        web_root: Optional[str],
        issued_at: Optional[datetime] = None,
    ) -> DomainRecord:
        """
        Update a domain after a successful issuance.

        The issuance time, contact and resolved web root are replaced; the
        existing ``ssh`` block is preserved.
        """
        issued_at = issued_at or datetime.now(timezone.utc)
        existing = self.get_or_blank(domain)
        record = replace(
            existing,
            issued_at=issued_at.isoformat(),
            email=email,
            web_root=web_root,
        )
        self.save(record)
        return record
