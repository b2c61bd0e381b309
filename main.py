#!/usr/bin/env python3
# ASCII banner generation
from pyfiglet import Figlet

# Rich library for colored and styled CLI output
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from cluster_utils.errors import OnboardingError, RbacApplyError, UsageError
from cluster_utils.kube_clients import KubeClients, init_kube_clients
from cluster_utils.polling import DEFAULT_INTERVAL_SECONDS, DEFAULT_TIMEOUT_SECONDS
from identity_issuer.csr_issuer import MIN_EXPIRATION_SECONDS, CertificateIssuer
from identity_issuer.kubeconfig_builder import build_kubeconfig, load_active_cluster, write_kubeconfig
from rbac_manager.access_grants import NamespacePolicy, parse_invocation
from rbac_manager.rbac_applier import RBACApplier, READONLY_ROLE_NAME

# Confirmation prompt before touching the cluster
import questionary
import argparse
import logging
import logging.handlers
import os
import sys
import traceback
from pathlib import Path
from typing import List, Optional

# Global console instance for rich printing
console = Console()
logger = logging.getLogger("k8s_user_onboarder")

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_FAILURE = 2

DEFAULT_LOG_FILE = Path.home() / ".k8s_user_onboarder" / "onboarder.log"
USAGE = "%(prog)s <username> <namespace1>:<read|write> [namespace2:access] ..."


# Show ASCII banner at launch
def show_banner():
    figlet = Figlet(font='slant')
    banner = figlet.renderText('K8sOnboarder')
    console.print(f"[bold blue]{banner}[/bold blue]")
    console.print("[blue]Kubernetes user provisioning with namespace-scoped RBAC[/blue]\n")


def setup_logging(log_file: Optional[str] = None, verbose: bool = False):
    """Setup rotating file logging, plus stderr output when verbose."""
    log_path = Path(log_file) if log_file else DEFAULT_LOG_FILE
    log_path.parent.mkdir(parents=True, exist_ok=True)

    handlers: List[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
    ]
    if verbose:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True
    )


class OnboarderArgumentParser(argparse.ArgumentParser):
    """Reports malformed invocations with the usage exit code."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = OnboarderArgumentParser(
        prog="k8s-user-onboarder",
        usage=USAGE,
        description="Create a Kubernetes user with a client certificate, a kubeconfig "
                    "and namespace-scoped RBAC. Namespaces with a protected prefix "
                    "are always granted read-only access.",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('username', nargs='?', default='', help='Name of the user (certificate CN and RBAC subject)')
    parser.add_argument('grants', nargs='*', metavar='namespace:access', help='Namespace grant, access is read or write')
    parser.add_argument('--output-dir', '-o', dest='output_dir', default=os.getcwd(),
                        help='Directory for the key, CSR, certificate and kubeconfig (default: current directory)')
    parser.add_argument('--kubeconfig', help='Admin kubeconfig to use (default: KUBECONFIG or ~/.kube/config)')
    parser.add_argument('--context', help='Kubeconfig context to use (default: current context)')
    parser.add_argument('--protected-prefix', dest='protected_prefixes', action='append', metavar='PREFIX',
                        help="Additional namespace prefix that is always read-only; repeatable (prod is always protected)")
    parser.add_argument('--lenient-access', action='store_true',
                        help='Treat any access value other than "read" as "write" instead of rejecting it')
    parser.add_argument('--no-namespace-reader', dest='namespace_reader', action='store_false',
                        help='Do not grant the cluster-wide permission to list namespaces')
    parser.add_argument('--approval-timeout', type=float, default=DEFAULT_TIMEOUT_SECONDS,
                        help='Seconds to wait for the CSR to be approved and signed (default: %(default)s)')
    parser.add_argument('--poll-interval', type=float, default=DEFAULT_INTERVAL_SECONDS,
                        help='Seconds between CSR status checks (default: %(default)s)')
    parser.add_argument('--expiration-seconds', type=int,
                        help=f"Requested certificate validity in seconds, at least {MIN_EXPIRATION_SECONDS} (Kubernetes >= 1.22)")
    parser.add_argument('--default-namespace', help='Namespace set on the generated kubeconfig context')
    parser.add_argument('--yes', '-y', action='store_true', help='Do not ask for confirmation')
    parser.add_argument('--no-banner', dest='banner', action='store_false', help='Do not print the banner')
    parser.add_argument('--verbose', '-v', action='store_true', help='Also log to stderr, at debug level')
    parser.add_argument('--log-file', help=f'Log file (default: {DEFAULT_LOG_FILE})')
    return parser


def validate_options(args):
    """Rejects numeric options the cluster calls cannot work with."""
    if args.approval_timeout < 0:
        raise UsageError(f"--approval-timeout must be >= 0, got {args.approval_timeout:g}.")
    if args.poll_interval <= 0:
        raise UsageError(f"--poll-interval must be > 0, got {args.poll_interval:g}.")
    if args.expiration_seconds is not None and args.expiration_seconds < MIN_EXPIRATION_SECONDS:
        raise UsageError(f"--expiration-seconds must be at least {MIN_EXPIRATION_SECONDS}, "
                         f"got {args.expiration_seconds}.")


def show_plan(username: str, grants, namespace_reader: bool):
    table = Table(title=f"Access plan for '{username}'")
    table.add_column("Namespace", style="bold")
    table.add_column("Requested")
    table.add_column("Applied")
    table.add_column("Objects")
    for grant in grants:
        applied = f"[yellow]{grant.effective} (protected)[/yellow]" if grant.downgraded else grant.effective
        if grant.is_read:
            objects = f"Role/{READONLY_ROLE_NAME}, RoleBinding/{username}-readonly-binding"
        else:
            objects = f"RoleBinding/{username}-edit-binding -> ClusterRole/edit"
        table.add_row(grant.namespace, grant.requested, applied, objects)
    console.print(table)
    if namespace_reader:
        console.print(f"Cluster-wide: ClusterRole/{username}-namespace-reader (get, list namespaces)")
    if any(g.is_read for g in grants):
        console.print(f"[yellow]Note: {READONLY_ROLE_NAME} includes get/list/watch on secrets.[/yellow]")


def print_summary(username: str, identity, kubeconfig_path: Path, report):
    table = Table(title="Applied objects")
    table.add_column("Kind", style="bold")
    table.add_column("Namespace")
    table.add_column("Name")
    table.add_column("Action")
    for obj in report.objects:
        table.add_row(obj.kind, obj.namespace or "-", obj.name, obj.action)
    console.print(table)
    console.print(Panel(
        f"Kubeconfig written to: [green]{kubeconfig_path}[/green]\n"
        f"Key: {identity.key_path}\nCertificate: {identity.cert_path}\n\n"
        f"Use it with: KUBECONFIG={kubeconfig_path} kubectl get pods -n <namespace>",
        title=f"User '{username}' ready",
        expand=False
    ))


def provision(args, clients: Optional[KubeClients] = None) -> int:
    """
    Runs the onboarding pipeline for the parsed arguments.

    Returns:
        int: Process exit code.
    """
    policy = NamespacePolicy(args.protected_prefixes or ())
    try:
        validate_options(args)
        username, grants = parse_invocation(args.username, args.grants, policy,
                                            lenient=args.lenient_access)
    except UsageError as e:
        console.print(f"[bold red]{e}[/bold red]")
        console.print(f"Usage: {USAGE % {'prog': 'k8s-user-onboarder'}}")
        return EXIT_USAGE

    setup_logging(args.log_file, args.verbose)
    logger.info(f"Onboarding '{username}' with grants {[f'{g.namespace}:{g.effective}' for g in grants]}")
    show_plan(username, grants, args.namespace_reader)

    if not args.yes and sys.stdin.isatty():
        proceed = questionary.confirm(f"Create user '{username}' and apply this access?", default=True).ask()
        if not proceed:
            console.print("[yellow]Cancelled, nothing was changed.[/yellow]")
            return EXIT_USAGE

    output_dir = Path(args.output_dir)
    try:
        cluster = load_active_cluster(args.kubeconfig, args.context)
        if clients is None:
            clients = init_kube_clients(args.kubeconfig, args.context)

        issuer = CertificateIssuer(
            clients.certificates_v1,
            output_dir=output_dir,
            timeout=args.approval_timeout,
            interval=args.poll_interval,
            expiration_seconds=args.expiration_seconds
        )
        identity = issuer.issue(username)

        document = build_kubeconfig(cluster, identity, default_namespace=args.default_namespace)
        kubeconfig_path = write_kubeconfig(document, output_dir / f"{username}-kubeconfig.yaml")
        console.print(f"[green]✓[/green] Kubeconfig written to: {kubeconfig_path}")

        applier = RBACApplier(clients.core_v1, clients.rbac_v1)
        report = applier.apply_grants(username, grants)
        if args.namespace_reader:
            applier.grant_namespace_reader(username)
        else:
            logger.info("Namespace listing grant skipped (--no-namespace-reader)")
    except RbacApplyError as e:
        logger.error(f"RBAC apply failed: {e}")
        console.print(f"[bold red]✗ {e}[/bold red]")
        done = ", ".join(e.applied) if e.applied else "none"
        console.print(f"Namespaces completed before the failure: [cyan]{done}[/cyan]")
        return EXIT_FAILURE
    except OnboardingError as e:
        logger.error(f"{type(e).__name__}: {e}")
        console.print(f"[bold red]✗ {type(e).__name__}: {e}[/bold red]")
        return EXIT_FAILURE

    print_summary(username, identity, kubeconfig_path, report)
    logger.info(f"Onboarding of '{username}' finished")
    return EXIT_OK


def cli(argv: Optional[List[str]] = None) -> int:
    """Console script entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.banner:
            show_banner()
        return provision(args)
    except (KeyboardInterrupt, EOFError):
        console.print("\n[bold yellow]Operation cancelled by user.[/bold yellow]")
        return EXIT_USAGE
    except Exception as e:
        console.print(f"\n[bold red]An unexpected critical error occurred: {e}[/bold red]")
        logger.error(f"Unexpected error: {e}\n{traceback.format_exc()}")
        traceback.print_exc()
        return EXIT_FAILURE


# Entry point
if __name__ == "__main__":
    sys.exit(cli())
