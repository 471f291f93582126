#!/usr/bin/env python3
"""
auto-cert - Main Entry Point.

Issues and renews Let's Encrypt certificates for local or SSH-reachable
hosts and keeps their nginx configuration in sync with the certificate
files.

Usage:
    # Register a domain, optionally on a remote host
    python main.py domain-add example.com /var/www/example
    python main.py domain-add api.example.com --ssh-host 10.0.0.5 --ssh-key ~/.ssh/id_ed25519

    # Issue a certificate and deploy the nginx configuration
    python main.py issue example.com --email admin@example.com
    python main.py deploy example.com --upstream localhost --port 3000

    # Renew everything that is due (for cron / CI)
    python main.py renew-all --json-summary
"""

import argparse
import json
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from autocert import __version__
from autocert.certificate import CertificateManager, IssueOptions
from autocert.config_loader import load_config, Config, ConfigurationError
from autocert.fleet import FleetSummary, renew_all
from autocert.helpers import format_expiration_status, is_valid_domain
from autocert.logger import setup_logger, get_logger, set_level
from autocert.nginx import DeployOptions, DeploymentError, Location, NginxDeployer
from autocert.notification import NotificationManager
from autocert.registry import DomainRegistry, RemoteTarget


# Commands whose stdout is the product itself
QUIET_COMMANDS = ("nginx-generate",)


@dataclass
class CommandSummary:
    """Execution summary of one CLI command."""
    task: str
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    completed_at: Optional[str] = None
    use_staging: bool = False
    success: bool = True
    exit_code: int = 0
    results: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    fleet: Optional[FleetSummary] = None

    def add_result(self, result: Dict[str, Any]) -> None:
        self.results.append(result)

    def add_error(self, error: str, exit_code: int = 1) -> None:
        self.errors.append(error)
        self.success = False
        self.exit_code = exit_code

    def set_fleet(self, fleet: FleetSummary) -> None:
        self.fleet = fleet
        if not fleet.success:
            self.success = False
            self.exit_code = fleet.exit_code

    def finalize(self) -> None:
        self.completed_at = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "task": self.task,
            "version": __version__,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "letsencrypt_environment": "staging" if self.use_staging else "production",
            "success": self.success,
            "exit_code": self.exit_code,
            "results": self.results,
            "errors": self.errors,
        }
        if self.fleet is not None:
            data["fleet"] = self.fleet.to_dict()
        return data

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)


def parse_location(value: str) -> Location:
    """
    Parse a --location value of the form ``PATH=DIRECTIVE; DIRECTIVE; ...``.

    Example: ``/api=proxy_pass http://localhost:4000; proxy_read_timeout 60s``
    """
    path, sep, body = value.partition("=")
    path = path.strip()
    if not sep or not path.startswith("/"):
        raise argparse.ArgumentTypeError(
            f"Invalid location '{value}', expected PATH=DIRECTIVE; DIRECTIVE"
        )
    directives = [d.strip().rstrip(";") + ";" for d in body.split(";") if d.strip()]
    if not directives:
        raise argparse.ArgumentTypeError(f"Location '{path}' has no directives")
    return Location(path=path, directives=directives)


def _common_parser() -> argparse.ArgumentParser:
    """Options accepted by every command."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to configuration file (default: config/config.yaml if present)",
    )
    common.add_argument(
        "--email", "-e",
        type=str,
        default=None,
        help="ACME contact email (overrides config)",
    )
    common.add_argument(
        "--staging",
        action="store_true",
        default=None,
        help="Use the Let's Encrypt staging environment",
    )
    common.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose/debug logging",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )
    common.add_argument(
        "--json-summary",
        action="store_true",
        help="Output machine-readable JSON summary at the end of execution",
    )
    return common


def _add_deploy_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--upstream", "-u", type=str, default="localhost",
                        help="Upstream host to proxy to (default: localhost)")
    parser.add_argument("--port", "-p", type=int, default=3000,
                        help="Upstream port (default: 3000)")
    parser.add_argument("--static", action="store_true",
                        help="Serve the web root instead of proxying")
    parser.add_argument("--webroot", "-w", type=str, default=None,
                        help="Web root for challenge files")
    parser.add_argument("--location", action="append", type=parse_location, default=[],
                        metavar="PATH=DIRECTIVES",
                        help="Extra location block, may be repeated")
    parser.add_argument("--no-redirect", action="store_true",
                        help="Do not redirect HTTP to HTTPS")
    parser.add_argument("--no-http2", action="store_true", help="Disable HTTP/2")
    parser.add_argument("--no-hsts", action="store_true", help="Disable HSTS header")


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Returns:
        Parsed arguments namespace
    """
    common = _common_parser()
    parser = argparse.ArgumentParser(
        prog="auto-cert",
        description="Let's Encrypt certificate issuance, renewal and nginx deployment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s domain-add example.com /var/www/example
  %(prog)s issue example.com --email admin@example.com --staging
  %(prog)s deploy example.com --upstream localhost --port 3000
  %(prog)s renew-all --json-summary
  %(prog)s check
        """,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    issue = commands.add_parser("issue", parents=[common], help="Issue a certificate")
    issue.add_argument("domain", help="Domain name")
    issue.add_argument("--type", "-t", dest="challenge_type", choices=["http-01", "dns-01"],
                       default=None, help="Challenge type (default: from config, http-01)")
    issue.add_argument("--webroot", "-w", type=str, default=None,
                       help="Web root for http-01 challenge files")
    issue.add_argument("--no-cleanup", action="store_true",
                       help="Keep challenge files after validation (debugging)")
    issue.add_argument("--verify-write", action="store_true",
                       help="Read challenge files back after writing them")
    issue.add_argument("--dns-provider", type=str, default=None,
                       help="DNS provider for dns-01 (default: from config)")

    renew = commands.add_parser("renew", parents=[common], help="Renew a certificate if due")
    renew.add_argument("domain", help="Domain name")
    renew.add_argument("--days", type=int, default=None,
                       help="Renew when this many days or fewer remain (default: 30)")
    renew.add_argument("--force", action="store_true", help="Renew regardless of expiry")

    renew_all_parser = commands.add_parser("renew-all", parents=[common],
                                           help="Renew every known domain that is due")
    renew_all_parser.add_argument("--days", type=int, default=None,
                                  help="Renew when this many days or fewer remain (default: 30)")
    renew_all_parser.add_argument("--force", action="store_true",
                                  help="Renew regardless of expiry")

    deploy = commands.add_parser("deploy", parents=[common],
                                 help="Create or upgrade the nginx configuration of a domain")
    deploy.add_argument("domain", help="Domain name")
    _add_deploy_arguments(deploy)
    deploy.add_argument("--conf-dir", type=str, default=None, help="nginx configuration directory")
    deploy.add_argument("--no-backup", action="store_true", help="Do not back up the existing configuration")
    deploy.add_argument("--no-reload", action="store_true", help="Do not reload nginx after deploying")

    check = commands.add_parser("check", parents=[common], help="Show certificate expiry")
    check.add_argument("domain", nargs="?", default=None,
                       help="Domain name (default: all certificates)")

    generate = commands.add_parser("nginx-generate", parents=[common],
                                   help="Print the nginx configuration of a domain")
    generate.add_argument("domain", help="Domain name")
    _add_deploy_arguments(generate)

    domain_add = commands.add_parser("domain-add", parents=[common],
                                     help="Register a domain in domains.yaml")
    domain_add.add_argument("domain", help="Domain name")
    domain_add.add_argument("webroot", nargs="?", default=None,
                            help="Web root of this domain (overrides the global setting)")
    domain_add.add_argument("--ssh-host", type=str, default=None, help="Remote host")
    domain_add.add_argument("--ssh-port", type=int, default=None, help="Remote SSH port (default: 22)")
    domain_add.add_argument("--ssh-user", type=str, default=None, help="Remote login (default: root)")
    domain_add.add_argument("--ssh-key", type=str, default=None, help="Private key path")
    domain_add.add_argument("--remote-webroot", type=str, default=None, help="Remote web root")
    domain_add.add_argument("--remote-nginx-conf-dir", type=str, default=None,
                            help="Remote nginx configuration directory")
    domain_add.add_argument("--remote-certs-dir", type=str, default=None,
                            help="Remote certificate directory")

    args = parser.parse_args(argv)

    if getattr(args, "days", None) is not None and not 1 <= args.days <= 90:
        parser.error("--days must be between 1 and 90")
    if args.command != "domain-add" or args.ssh_host is None:
        for option in ("ssh_port", "ssh_user", "ssh_key", "remote_webroot",
                       "remote_nginx_conf_dir", "remote_certs_dir"):
            if getattr(args, option, None) is not None:
                parser.error(f"--{option.replace('_', '-')} requires --ssh-host")

    return args


def _config_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {
        "email": args.email,
        "staging": args.staging,
        "challenge_type": getattr(args, "challenge_type", None),
        "dns_provider": getattr(args, "dns_provider", None),
    }


def _deploy_options(args: argparse.Namespace) -> DeployOptions:
    return DeployOptions(
        upstream=None if args.static else args.upstream,
        upstream_port=args.port,
        web_root=args.webroot,
        conf_dir=getattr(args, "conf_dir", None),
        locations=args.location,
        backup=not getattr(args, "no_backup", False),
        reload=not getattr(args, "no_reload", False),
        redirect_http=not args.no_redirect,
        http2=not args.no_http2,
        hsts=not args.no_hsts,
    )


def run_issue(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    manager = CertificateManager(config)
    result = manager.issue(args.domain, IssueOptions(
        email=args.email,
        staging=args.staging,
        web_root=args.webroot,
        challenge_type=args.challenge_type,
        cleanup=not args.no_cleanup,
        verify_write=args.verify_write or None,
    ))
    entry = result.info.to_dict()
    entry["paths"] = result.paths.to_dict()
    if result.remote_dir:
        entry["remote_dir"] = result.remote_dir
    summary.add_result(entry)


def run_renew(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    manager = CertificateManager(config)
    outcome = manager.renew(args.domain, IssueOptions(
        email=args.email,
        staging=args.staging,
        force=args.force,
        renew_before_days=args.days,
    ))
    summary.add_result({
        "domain": outcome.domain,
        "renewed": outcome.renewed,
        "reason": outcome.reason,
        "days_remaining": outcome.days_remaining,
    })


def run_renew_all(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    logger = get_logger()
    notifier = NotificationManager(config.notifications)
    if notifier.is_enabled():
        logger.info("Notifications enabled")

    fleet = renew_all(
        CertificateManager(config),
        IssueOptions(
            email=args.email,
            staging=args.staging,
            force=args.force,
            renew_before_days=args.days,
        ),
        notifier=notifier,
    )
    summary.set_fleet(fleet)


def run_deploy(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    outcome = NginxDeployer(config).deploy(args.domain, _deploy_options(args))
    summary.add_result(dict(domain=args.domain, **outcome.to_dict()))


def run_check(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    logger = get_logger()
    manager = CertificateManager(config)
    threshold = config.settings.renew_before_days

    infos = [manager.get_info(args.domain)] if args.domain else manager.list_certificates()
    if not infos:
        logger.warning("No certificates found")
        return

    logger.subsection("Certificate status")
    for info in infos:
        status = format_expiration_status(info.not_after, threshold)
        line = f"  {info.domain}: {status}, expires {info.not_after:%Y-%m-%d}"
        if info.issuer:
            line += f", issuer {info.issuer}"
        if info.days_remaining <= 7:
            logger.error(line)
        elif info.days_remaining <= threshold:
            logger.warning(line)
        else:
            logger.info(line)
        summary.add_result(info.to_dict())


def run_nginx_generate(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    print(NginxDeployer(config).generate(args.domain, _deploy_options(args)))


def run_domain_add(args: argparse.Namespace, config: Config, summary: CommandSummary) -> None:
    logger = get_logger()
    if not is_valid_domain(args.domain):
        raise ConfigurationError(f"Invalid domain name: {args.domain}")

    ssh = None
    if args.ssh_host:
        ssh = RemoteTarget.from_dict({
            "host": args.ssh_host,
            "port": args.ssh_port,
            "username": args.ssh_user,
            "privateKey": args.ssh_key,
            "password": os.environ.get("AUTO_CERT_SSH_PASSWORD") or None,
            "remoteWebRoot": args.remote_webroot,
            "remoteNginxConfDir": args.remote_nginx_conf_dir,
            "remoteCertsDir": args.remote_certs_dir,
        })

    registry = DomainRegistry(config.domains_file)
    record = registry.add(args.domain, web_root=args.webroot, ssh=ssh)
    logger.success(f"Domain registered: {record.domain} ({config.domains_file})")
    summary.add_result(dict(domain=record.domain, **record.to_dict()))


COMMANDS = {
    "issue": run_issue,
    "renew": run_renew,
    "renew-all": run_renew_all,
    "deploy": run_deploy,
    "check": run_check,
    "nginx-generate": run_nginx_generate,
    "domain-add": run_domain_add,
}


def print_summary(summary: CommandSummary, output_json: bool = False) -> None:
    """
    Print the execution summary block and the pipeline status line.

    Args:
        summary: CommandSummary with all results
        output_json: If True, also output machine-readable JSON
    """
    logger = get_logger()
    separator = "=" * 70

    logger.info("")
    logger.info(separator)
    logger.info("EXECUTION SUMMARY")
    logger.info(separator)

    status_str = "SUCCESS" if summary.success else "FAILED"
    if summary.use_staging:
        status_str += " (STAGING)"
    logger.info(f"Status: {status_str}")
    logger.info(f"Task: {summary.task}")
    logger.info(f"Let's Encrypt Environment: {'STAGING' if summary.use_staging else 'PRODUCTION'}")
    logger.info(f"Started: {summary.started_at}")
    logger.info(f"Completed: {summary.completed_at}")

    fleet = summary.fleet
    if fleet is not None:
        logger.info("")
        logger.info("-" * 40)
        logger.info("DOMAINS")
        logger.info("-" * 40)
        logger.info(f"  Total domains:          {fleet.total}")
        logger.info(f"  Renewed successfully:   {len(fleet.renewed)}")
        logger.info(f"  Skipped (not due):      {len(fleet.skipped)}")
        logger.info(f"  Failed:                 {len(fleet.failed)}")
        for result in fleet.renewed:
            logger.info(f"  [SUCCESS] {result.domain}: {result.message}")
        for result in fleet.skipped:
            logger.info(f"  [SKIPPED] {result.domain}: {result.message}")
        for result in fleet.failed:
            logger.error(f"  [FAILED] {result.domain}: {result.message}")

    if summary.errors:
        logger.info("")
        logger.error("-" * 40)
        logger.error("ERRORS")
        logger.error("-" * 40)
        for error in summary.errors:
            logger.error(f"  - {error}")

    logger.info("")
    logger.info(separator)
    logger.info(f"Exit Code: {summary.exit_code}")
    logger.info(separator)

    # Status line for CI/CD pipeline parsing
    if summary.success:
        print("PIPELINE_STATUS=SUCCESS")
    else:
        print("PIPELINE_STATUS=FAILURE")

    if output_json:
        logger.info("")
        logger.info("--- BEGIN JSON SUMMARY ---")
        print(summary.to_json())
        logger.info("--- END JSON SUMMARY ---")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Exit Codes:
        0 - All operations succeeded
        1 - One or more operations failed
        2 - Configuration error

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    args = parse_arguments(argv)
    quiet = args.command in QUIET_COMMANDS

    logger = setup_logger(
        verbose=args.verbose,
        use_colors=not args.no_color,
    )
    if not quiet:
        logger.info(f"auto-cert {__version__}")
        logger.info("=" * 50)

    summary = CommandSummary(task=args.command)

    try:
        config = load_config(args.config, overrides=_config_overrides(args))
        summary.use_staging = config.settings.staging
        if not args.verbose:
            set_level(config.settings.log_level)

        if config.settings.staging and not quiet:
            logger.warning("STAGING MODE - Using Let's Encrypt staging environment")
            logger.warning("Certificates issued will NOT be trusted by browsers")

        COMMANDS[args.command](args, config, summary)

    except ConfigurationError as e:
        error_msg = f"Configuration error: {e}"
        logger.error(error_msg)
        summary.add_error(error_msg, exit_code=2)

    except DeploymentError as e:
        error_msg = f"Deployment failed: {e}"
        logger.error(error_msg)
        summary.add_error(error_msg)
        if e.outcome is not None:
            summary.add_result(e.outcome.to_dict())

    except Exception as e:
        error_msg = f"Fatal error: {type(e).__name__}: {e}"
        logger.error(error_msg)
        summary.add_error(error_msg)
        if args.verbose:
            import traceback
            traceback.print_exc()

    summary.finalize()
    if not quiet:
        print_summary(summary, output_json=args.json_summary)

    return summary.exit_code


if __name__ == "__main__":
    sys.exit(main())
