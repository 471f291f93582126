"""
nginx reverse-proxy configuration.

Generates a complete HTTP + HTTPS configuration for a new domain, adds a
TLS companion block to an existing plaintext configuration, and deploys the
result through an ExecutionGateway with timestamped backups and automatic
rollback when ``nginx -t`` rejects it.
"""

import posixpath
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from .certificate import CertificatePaths
from .config_loader import Config
from .gateway import CommandResult, ExecutionGateway, TransportError, open_gateway
from .helpers import epoch_millis
from .logger import get_logger
from .registry import DomainRecord, DomainRegistry, RemoteTarget


CHALLENGE_LOCATION = "/.well-known/acme-challenge/"
BACKUP_MARKER = ".backup."
INDENT = "    "

SSL_CIPHERS = (
    "ECDHE-ECDSA-AES128-GCM-SHA256:ECDHE-RSA-AES128-GCM-SHA256:"
    "ECDHE-ECDSA-AES256-GCM-SHA384:ECDHE-RSA-AES256-GCM-SHA384:"
    "ECDHE-ECDSA-CHACHA20-POLY1305:ECDHE-RSA-CHACHA20-POLY1305:"
    "DHE-RSA-AES128-GCM-SHA256:DHE-RSA-AES256-GCM-SHA384"
)


class DeploymentError(Exception):
    """Base error for nginx deployment."""

    def __init__(self, message: str, outcome: Optional["DeploymentOutcome"] = None):
        super().__init__(message)
        self.outcome = outcome


class ConfigValidationFailed(DeploymentError):
    """Raised when the nginx self-test rejects the deployed configuration."""
    pass


class ReloadFailed(DeploymentError):
    """Raised when nginx fails to reload a configuration that passed self-test."""
    pass


class ConfigState(Enum):
    """Classification of an existing configuration file."""
    ABSENT = "absent"
    PLAIN = "present-without-tls"
    TLS = "present-with-tls"


@dataclass
class Location:
    """A custom location block."""
    path: str
    directives: List[str] = field(default_factory=list)


@dataclass
class ProxyConfigPlan:
    """Everything needed to render the configuration of one domain."""
    domain: str
    paths: CertificatePaths
    upstream: Optional[str] = "localhost"
    upstream_port: int = 3000
    web_root: str = "/var/www/html"
    locations: List[Location] = field(default_factory=list)
    redirect_http: bool = True
    http2: bool = True
    hsts: bool = True


@dataclass
class DeploymentOutcome:
    """Result of a deploy call."""
    config_path: str
    action: str  # created | transformed | skipped | rolled-back
    reason: str = ""
    backup_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "config_path": self.config_path,
            "action": self.action,
            "reason": self.reason,
            "backup_path": self.backup_path,
        }


@dataclass
class Directive:
    """A simple directive terminated by ';'."""
    name: str
    args: List[str]
    start: int
    end: int


@dataclass
class Block:
    """A directive with a {...} body."""
    name: str
    args: List[str]
    start: int
    open_brace: int
    close_brace: int
    children: List[Union[Directive, "Block"]] = field(default_factory=list)

    @property
    def end(self) -> int:
        return self.close_brace + 1

    def directives(self, name: str) -> List[Directive]:
        return [c for c in self.children if isinstance(c, Directive) and c.name == name]

    def blocks(self, name: str) -> List["Block"]:
        return [c for c in self.children if isinstance(c, Block) and c.name == name]


def _tokenize(text: str) -> List[Tuple[str, int, int]]:
    """
    Split nginx configuration text into (token, start, end) tuples.

    Quoted strings are single tokens and may contain braces, semicolons
    and '#'. A '${name}' variable stays inside the word it appears in. Comments run from an unquoted '#' to the end of the line.
    """
    tokens = []
    i = 0
    length = len(text)

    while i < length:
        char = text[i]

        if char.isspace():
            i += 1
            continue

        if char == "#":
            newline = text.find("\n", i)
            i = length if newline == -1 else newline + 1
            continue

        if char in "{};":
            tokens.append((char, i, i + 1))
            i += 1
            continue

        start = i
        while i < length:
            char = text[i]
            if char in "\"'":
                quote = char
                i += 1
                while i < length and text[i] != quote:
                    if text[i] == "\\":
                        i += 1
                    i += 1
                if i >= length:
                    raise DeploymentError(f"Unterminated quoted string at offset {start}")
                i += 1
                continue
            if char == "$" and i + 1 < length and text[i + 1] == "{":
                close = text.find("}", i + 2)
                if close == -1:
                    raise DeploymentError(f"Unterminated variable at offset {i}")
                i = close + 1
                continue
            if char.isspace() or char in "{};#":
                break
            if char == "\\":
                i += 1
            i += 1
        tokens.append((text[start:i], start, i))

    return tokens


def parse_config(text: str) -> List[Union[Directive, Block]]:
    """
    Parse nginx configuration text into a tree of directives and blocks.

    Raises:
        DeploymentError: If braces are unbalanced or a directive is unterminated
    """
    root = Block(name="", args=[], start=0, open_brace=-1, close_brace=len(text))
    stack = [root]
    words: List[Tuple[str, int, int]] = []

    for token, start, end in _tokenize(text):
        if token == ";":
            if not words:
                continue
            stack[-1].children.append(Directive(
                name=words[0][0],
                args=[w[0] for w in words[1:]],
                start=words[0][1],
                end=end,
            ))
            words = []
        elif token == "{":
            if not words:
                raise DeploymentError(f"Block without a name at offset {start}")
            block = Block(
                name=words[0][0],
                args=[w[0] for w in words[1:]],
                start=words[0][1],
                open_brace=start,
                close_brace=-1,
            )
            stack[-1].children.append(block)
            stack.append(block)
            words = []
        elif token == "}":
            if words:
                raise DeploymentError(f"Directive '{words[0][0]}' missing ';' at offset {words[0][1]}")
            if len(stack) == 1:
                raise DeploymentError(f"Unbalanced '}}' at offset {start}")
            stack.pop().close_brace = start
        else:
            words.append((token, start, end))

    if words:
        raise DeploymentError(f"Directive '{words[0][0]}' missing ';' at offset {words[0][1]}")
    if len(stack) != 1:
        raise DeploymentError(f"Unbalanced '{{' in block '{stack[-1].name}'")
    return root.children


def find_server_blocks(nodes: List[Union[Directive, Block]]) -> List[Block]:
    """Server blocks at the top level or directly inside an http block."""
    servers = []
    for node in nodes:
        if not isinstance(node, Block):
            continue
        if node.name == "server":
            servers.append(node)
        elif node.name == "http":
            servers.extend(node.blocks("server"))
    return servers


def _walk(nodes: List[Union[Directive, Block]]):
    for node in nodes:
        yield node
        if isinstance(node, Block):
            yield from _walk(node.children)


def _is_tls_listen(directive: Directive) -> bool:
    if "ssl" in directive.args or "quic" in directive.args:
        return True
    address = directive.args[0] if directive.args else ""
    return address == "443" or address.endswith(":443")


def _has_plain_listener(server: Block) -> bool:
    listens = server.directives("listen")
    if not listens:
        # nginx listens on port 80 when no listen directive is given
        return True
    return any(not _is_tls_listen(listen) for listen in listens)


def classify_config(text: Optional[str]) -> ConfigState:
    """
    Classify existing configuration text.

    TLS when any ssl_certificate directive or secure listener is present,
    PLAIN otherwise, ABSENT when there is no file.
    """
    if text is None:
        return ConfigState.ABSENT

    for node in _walk(parse_config(text)):
        if isinstance(node, Directive):
            if node.name == "ssl_certificate":
                return ConfigState.TLS
            if node.name == "listen" and _is_tls_listen(node):
                return ConfigState.TLS
    return ConfigState.PLAIN


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def is_challenge_location(block: Block) -> bool:
    return any(".well-known/acme-challenge" in _unquote(arg) for arg in block.args)


def _is_redirect_directive(directive: Directive) -> bool:
    if directive.name == "return":
        return bool(directive.args) and directive.args[0] in ("301", "302", "303", "307", "308")
    if directive.name == "rewrite":
        return bool(directive.args) and directive.args[-1] in ("permanent", "redirect")
    return False


def is_redirect_location(block: Block) -> bool:
    """A location whose only job is an HTTP redirect."""
    if not block.children:
        return False
    return all(isinstance(c, Directive) and _is_redirect_directive(c) for c in block.children)


def _ssl_lines(plan: ProxyConfigPlan) -> List[str]:
    lines = [
        "# SSL certificate",
        f"ssl_certificate {plan.paths.fullchain};",
        f"ssl_certificate_key {plan.paths.private_key};",
        f"ssl_trusted_certificate {plan.paths.chain};",
        "",
        "# SSL protocols and ciphers",
        "ssl_protocols TLSv1.2 TLSv1.3;",
        f"ssl_ciphers {SSL_CIPHERS};",
        "ssl_prefer_server_ciphers off;",
        "",
        "# Session",
        "ssl_session_timeout 1d;",
        "ssl_session_cache shared:SSL:50m;",
        "ssl_session_tickets off;",
        "",
        "# OCSP stapling",
        "ssl_stapling on;",
        "ssl_stapling_verify on;",
        "resolver 8.8.8.8 8.8.4.4 1.1.1.1 valid=300s;",
        "resolver_timeout 5s;",
        "",
        "# Security headers",
    ]
    if plan.hsts:
        lines.append(
            'add_header Strict-Transport-Security "max-age=63072000; includeSubDomains; preload" always;'
        )
    lines += [
        'add_header X-Frame-Options "SAMEORIGIN" always;',
        'add_header X-Content-Type-Options "nosniff" always;',
        'add_header X-XSS-Protection "1; mode=block" always;',
        'add_header Referrer-Policy "strict-origin-when-cross-origin" always;',
    ]
    return lines


def _tls_listen_lines(plan: ProxyConfigPlan) -> List[str]:
    suffix = " http2" if plan.http2 else ""
    return [f"listen 443 ssl{suffix};", f"listen [::]:443 ssl{suffix};"]


def _location_lines(path: str, directives: List[str]) -> List[str]:
    return [f"location {path} {{"] + [f"{INDENT}{d}" for d in directives] + ["}"]


def _challenge_location_lines(web_root: str) -> List[str]:
    return _location_lines(
        CHALLENGE_LOCATION,
        [f"alias {web_root}{CHALLENGE_LOCATION.rstrip('/')}/;"],
    )


def _default_location_lines(plan: ProxyConfigPlan) -> List[str]:
    if plan.upstream is None:
        return _location_lines("/", [
            f"root {plan.web_root}/{plan.domain};",
            "index index.html index.htm;",
            "try_files $uri $uri/ =404;",
        ])
    return _location_lines("/", [
        f"proxy_pass http://{plan.upstream}:{plan.upstream_port};",
        "proxy_http_version 1.1;",
        "proxy_set_header Upgrade $http_upgrade;",
        "proxy_set_header Connection 'upgrade';",
        "proxy_set_header Host $host;",
        "proxy_set_header X-Real-IP $remote_addr;",
        "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
        "proxy_set_header X-Forwarded-Proto $scheme;",
        "proxy_cache_bypass $http_upgrade;",
    ])


def _server_block(lines: List[str]) -> str:
    body = "\n".join(f"{INDENT}{line}" if line else "" for line in lines)
    return f"server {{\n{body}\n}}\n"


def generate_config(plan: ProxyConfigPlan) -> str:
    """
    Render a complete configuration: a port 80 block serving challenge
    proofs (and redirecting to HTTPS) and a port 443 block proxying to the
    upstream.
    """
    http_lines = [
        "listen 80;",
        "listen [::]:80;",
        f"server_name {plan.domain};",
        "",
        "# ACME challenge",
        *_challenge_location_lines(plan.web_root),
        "",
    ]
    if plan.redirect_http:
        http_lines += _location_lines("/", ["return 301 https://$server_name$request_uri;"])
    else:
        http_lines += _default_location_lines(plan)

    https_lines = _tls_listen_lines(plan) + [f"server_name {plan.domain};", ""]
    https_lines += _ssl_lines(plan)
    for location in plan.locations:
        https_lines += [""] + _location_lines(location.path, location.directives)
    https_lines += [""] + _default_location_lines(plan)

    return _server_block(http_lines) + "\n" + _server_block(https_lines)


def _companion_tls_block(text: str, server: Block, plan: ProxyConfigPlan) -> str:
    """
    TLS block for an existing plaintext server block.

    Every directive and nested block of the original is carried over except
    its listeners, redirects and challenge-proof locations. When a redirect
    was dropped and nothing serves "/", the default proxy location takes
    its place.
    """
    server_names = server.directives("server_name")
    if server_names:
        names_line = text[server_names[0].start:server_names[0].end]
    else:
        names_line = f"server_name {plan.domain};"

    carried = []
    dropped_redirect = False
    serves_root = False
    for child in server.children:
        if isinstance(child, Directive):
            if child.name in ("listen", "server_name"):
                continue
            if _is_redirect_directive(child):
                dropped_redirect = True
                continue
        elif child.name == "location":
            if is_challenge_location(child):
                continue
            if is_redirect_location(child):
                dropped_redirect = True
                continue
            if child.args == ["/"]:
                serves_root = True
        carried.append(text[child.start:child.end])

    lines = _tls_listen_lines(plan) + [names_line, ""] + _ssl_lines(plan)
    if dropped_redirect and not serves_root:
        lines += [""] + _default_location_lines(plan)
    body = "\n".join(f"{INDENT}{line}" if line else "" for line in lines)
    for raw in carried:
        body += f"\n\n{INDENT}{raw}"
    return f"server {{\n{body}\n}}\n"


def transform_config(text: str, plan: ProxyConfigPlan) -> str:
    """
    Add TLS to a plaintext configuration.

    For every server block with a plaintext listener, a companion TLS block
    is inserted right after it, and the challenge-proof location is added
    to the plaintext block when missing. Everything else is kept verbatim.

    Raises:
        DeploymentError: If the text cannot be parsed or has no plaintext server block
    """
    servers = [s for s in find_server_blocks(parse_config(text)) if _has_plain_listener(s)]
    if not servers:
        raise DeploymentError("No server block with a plaintext listener found")

    challenge = "\n".join(
        f"{INDENT}{line}" for line in ["# ACME challenge"] + _challenge_location_lines(plan.web_root)
    )

    result = []
    cursor = 0
    for server in servers:
        has_challenge = any(is_challenge_location(b) for b in server.blocks("location"))
        if has_challenge:
            result.append(text[cursor:server.end])
        else:
            body = text[cursor:server.close_brace].rstrip()
            result.append(f"{body}\n\n{challenge}\n}}")
        result.append("\n\n" + _companion_tls_block(text, server, plan).rstrip("\n"))
        cursor = server.end

    result.append(text[cursor:])
    output = "".join(result)
    return output if output.endswith("\n") else output + "\n"


@dataclass
class DeployOptions:
    """Per-call options of deploy and generate."""
    upstream: Optional[str] = "localhost"
    upstream_port: int = 3000
    web_root: Optional[str] = None
    conf_dir: Optional[str] = None
    locations: List[Location] = field(default_factory=list)
    backup: bool = True
    reload: bool = True
    redirect_http: bool = True
    http2: bool = True
    hsts: bool = True


def backup_name(config_path: str, timestamp: int) -> str:
    return f"{config_path}{BACKUP_MARKER}{timestamp}"


def _backup_timestamp(name: str, base_name: str) -> Optional[int]:
    prefix = base_name + BACKUP_MARKER
    if not name.startswith(prefix):
        return None
    suffix = name[len(prefix):]
    return int(suffix) if suffix.isdigit() else None


class NginxDeployer:
    """
    Deploys per-domain nginx configuration locally or on a domain's remote
    host.
    """

    def __init__(
        self,
        config: Config,
        registry: Optional[DomainRegistry] = None,
        ssh_factory: Optional[Callable[[RemoteTarget], object]] = None,
        clock: Callable[[], int] = epoch_millis,
    ):
        self.config = config
        self.registry = registry or DomainRegistry(config.domains_file)
        self.ssh_factory = ssh_factory
        self.clock = clock

    def conf_dir(self, record: DomainRecord, options: DeployOptions, remote: bool) -> str:
        if options.conf_dir:
            return options.conf_dir
        if remote and record.ssh:
            return record.ssh.remote_nginx_conf_dir
        return self.config.settings.nginx_conf_dir

    def build_plan(self, record: DomainRecord, options: DeployOptions, remote: bool) -> ProxyConfigPlan:
        """Resolve certificate paths and web root for a domain."""
        if remote and record.ssh:
            remote_dir = posixpath.join(record.ssh.remote_certs_dir, record.domain)
            paths = CertificatePaths.for_dir(remote_dir, join=posixpath.join)
        else:
            paths = CertificatePaths.for_dir(self.config.domain_dir(record.domain))

        return ProxyConfigPlan(
            domain=record.domain,
            paths=paths,
            upstream=options.upstream,
            upstream_port=options.upstream_port,
            web_root=record.resolve_web_root(options.web_root, self.config.settings.web_root, remote),
            locations=list(options.locations),
            redirect_http=options.redirect_http,
            http2=options.http2,
            hsts=options.hsts,
        )

    def generate(self, domain: str, options: Optional[DeployOptions] = None) -> str:
        """Render the full configuration of a domain without touching any file."""
        options = options or DeployOptions()
        record = self.registry.get_or_blank(domain)
        return generate_config(self.build_plan(record, options, remote=record.is_remote))

    def deploy(self, domain: str, options: Optional[DeployOptions] = None) -> DeploymentOutcome:
        """
        Create or upgrade the nginx configuration of a domain.

        Raises:
            ConfigValidationFailed: If nginx -t rejects the new configuration
            ReloadFailed: If nginx fails to reload
            DeploymentError: If the existing configuration cannot be parsed
            TransportError: If the remote host cannot be reached
        """
        logger = get_logger()
        options = options or DeployOptions()
        record = self.registry.get_or_blank(domain)

        logger.subsection(f"Deploying nginx configuration: {domain}")
        with open_gateway(record.ssh, self.ssh_factory) as gateway:
            conf_dir = self.conf_dir(record, options, gateway.is_remote)
            config_path = gateway.join(conf_dir, f"{domain}.conf")
            plan = self.build_plan(record, options, gateway.is_remote)

            existing = None
            if gateway.exists(config_path):
                existing = gateway.read_file(config_path).decode("utf-8")
            state = classify_config(existing)
            logger.info(f"  Config: {config_path} ({state.value}, {gateway.description})")

            if state == ConfigState.TLS:
                logger.info("  Configuration already has TLS, leaving it untouched")
                return DeploymentOutcome(config_path, "skipped", "already-has-tls")

            backup_path = None
            if state == ConfigState.ABSENT:
                content = generate_config(plan)
                gateway.ensure_dir(conf_dir)
                outcome = DeploymentOutcome(config_path, "created", "generated")
            else:
                content = transform_config(existing, plan)
                if options.backup:
                    backup_path = self.backup(gateway, config_path)
                outcome = DeploymentOutcome(config_path, "transformed", "tls-added", backup_path)

            try:
                gateway.write_file(config_path, content)
            except (OSError, TransportError):
                self._roll_back(gateway, config_path, state, backup_path, outcome, "write-failed")
                raise
            logger.info(f"  Configuration written: {config_path}")

            test = self._run(gateway, self.config.settings.nginx_test_command)
            if not test.ok:
                self._roll_back(gateway, config_path, state, backup_path, outcome)
                raise ConfigValidationFailed(
                    f"nginx configuration test failed for {domain}: {test.stderr or test.stdout}",
                    outcome,
                )
            logger.info("  nginx configuration test passed")

            if options.reload:
                reload = self._run(gateway, self.config.settings.nginx_reload_command)
                if not reload.ok:
                    raise ReloadFailed(
                        f"nginx reload failed for {domain}: {reload.stderr or reload.stdout}",
                        outcome,
                    )
                logger.info("  nginx reloaded")

            if backup_path:
                self.prune_backups(gateway, config_path, self.config.settings.backup_keep)

        logger.success(f"nginx configuration {outcome.action}: {config_path}")
        return outcome

    def _run(self, gateway: ExecutionGateway, command: str) -> CommandResult:
        get_logger().debug(f"  Running: {command}")
        return gateway.run(command)

    def _roll_back(
        self,
        gateway: ExecutionGateway,
        config_path: str,
        state: ConfigState,
        backup_path: Optional[str],
        outcome: DeploymentOutcome,
        reason: str = "self-test-failed",
    ) -> None:
        logger = get_logger()
        if backup_path:
            self.restore(gateway, config_path)
            outcome.action = "rolled-back"
            outcome.reason = reason
            logger.warning(f"  Restored previous configuration from {backup_path}")
        elif state == ConfigState.ABSENT:
            gateway.remove(config_path)
            outcome.action = "rolled-back"
            outcome.reason = reason
            logger.warning(f"  Removed rejected configuration {config_path}")
        else:
            logger.warning(f"  No backup available, rejected configuration left at {config_path}")

    def backup(self, gateway: ExecutionGateway, config_path: str) -> Optional[str]:
        """Copy a configuration file to <path>.backup.<epoch-ms>."""
        if not gateway.exists(config_path):
            return None
        backup_path = backup_name(config_path, self.clock())
        gateway.copy_file(config_path, backup_path)
        get_logger().info(f"  Backup created: {backup_path}")
        return backup_path

    def list_backups(self, gateway: ExecutionGateway, config_path: str) -> List[Tuple[int, str]]:
        """(timestamp, path) of every backup of an exact path, oldest first."""
        directory = gateway.dirname(config_path)
        base_name = gateway.basename(config_path)
        backups = []
        for name in gateway.list_dir(directory):
            timestamp = _backup_timestamp(name, base_name)
            if timestamp is not None:
                backups.append((timestamp, gateway.join(directory, name)))
        return sorted(backups)

    def restore(self, gateway: ExecutionGateway, config_path: str) -> Optional[str]:
        """
        Restore the most recent backup of a configuration file.

        Returns:
            Path of the backup used, or None if there is none
        """
        backups = self.list_backups(gateway, config_path)
        if not backups:
            return None
        _, latest = backups[-1]
        gateway.copy_file(latest, config_path)
        return latest

    def prune_backups(self, gateway: ExecutionGateway, config_path: str, keep: int) -> List[str]:
        """Delete all but the newest ``keep`` backups. Failures are logged."""
        logger = get_logger()
        removed = []
        backups = self.list_backups(gateway, config_path)
        stale = backups[:-keep] if keep > 0 else backups
        for _, path in stale:
            try:
                gateway.remove(path)
                removed.append(path)
            except (OSError, TransportError) as e:
                logger.warning(f"  Failed to remove old backup {path}: {e}")
        if removed:
            logger.debug(f"  Removed {len(removed)} old backup(s) of {config_path}")
        return removed
