"""
auto-cert: ACME certificate issuance, renewal and nginx deployment.

This package contains:
- gateway / ssh: local and remote (OpenSSH) execution of file and process operations
- challenges: http-01 and dns-01 challenge strategies
- acme_client: ACME client contract and the Let's Encrypt implementation
- certificate: issuance state machine, renewal and certificate storage
- registry: per-domain records in domains.yaml
- nginx: nginx config generation, transformation and deployment
- fleet: bulk renewal of every known domain
- config_loader: Configuration loading and validation
- logger: Centralized logging setup
- helpers: Common utility functions
- notification: Notification system for renewal events
"""

__version__ = "1.0.0"

from .logger import setup_logger, get_logger, set_level
from .config_loader import (
    load_config,
    Config,
    Settings,
    ConfigurationError,
    NotificationsConfig,
    EmailNotificationConfig,
    TeamsNotificationConfig,
)
from .gateway import (
    TransportError,
    CommandResult,
    ExecutionGateway,
    LocalGateway,
    RemoteGateway,
    open_gateway,
)
from .registry import DomainRecord, DomainRegistry, RemoteTarget
from .challenges import (
    ChallengeError,
    ChallengeUnsupported,
    ProofWriteFailed,
    ValidationTimeout,
    ValidationFailed,
    UnsupportedProvider,
    ChallengeContext,
    FileChallenge,
    DnsChallenge,
    build_strategy,
)
from .acme_client import AcmeClient, AcmeError, AcmeSession, LetsEncryptClient
from .certificate import (
    CertificateError,
    MalformedCertificateBundle,
    CertificateNotFound,
    IssuanceState,
    CertificateManager,
    CertificateStore,
    IssueOptions,
    RenewOutcome,
    parse_bundle,
    serialize_bundle,
)
from .nginx import (
    DeploymentError,
    ConfigValidationFailed,
    ReloadFailed,
    ConfigState,
    DeployOptions,
    DeploymentOutcome,
    Location,
    NginxDeployer,
    classify_config,
    generate_config,
    transform_config,
)
from .fleet import FleetSummary, DomainResult, RenewalStatus, renew_all
from .notification import NotificationManager, NotificationContext

__all__ = [
    "__version__",
    # Logger
    "setup_logger",
    "get_logger",
    "set_level",
    # Config
    "load_config",
    "Config",
    "Settings",
    "ConfigurationError",
    "NotificationsConfig",
    "EmailNotificationConfig",
    "TeamsNotificationConfig",
    # Execution
    "TransportError",
    "CommandResult",
    "ExecutionGateway",
    "LocalGateway",
    "RemoteGateway",
    "open_gateway",
    # Registry
    "DomainRecord",
    "DomainRegistry",
    "RemoteTarget",
    # Challenges
    "ChallengeError",
    "ChallengeUnsupported",
    "ProofWriteFailed",
    "ValidationTimeout",
    "ValidationFailed",
    "UnsupportedProvider",
    "ChallengeContext",
    "FileChallenge",
    "DnsChallenge",
    "build_strategy",
    # ACME
    "AcmeClient",
    "AcmeError",
    "AcmeSession",
    "LetsEncryptClient",
    # Certificates
    "CertificateError",
    "MalformedCertificateBundle",
    "CertificateNotFound",
    "IssuanceState",
    "CertificateManager",
    "CertificateStore",
    "IssueOptions",
    "RenewOutcome",
    "parse_bundle",
    "serialize_bundle",
    # nginx
    "DeploymentError",
    "ConfigValidationFailed",
    "ReloadFailed",
    "ConfigState",
    "DeployOptions",
    "DeploymentOutcome",
    "Location",
    "NginxDeployer",
    "classify_config",
    "generate_config",
    "transform_config",
    # Fleet
    "FleetSummary",
    "DomainResult",
    "RenewalStatus",
    "renew_all",
    # Notifications
    "NotificationManager",
    "NotificationContext",
]
