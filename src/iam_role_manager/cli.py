"""IAM Role Manager - operator entry point."""

import argparse
import logging
import sys
from typing import List, Optional

import kopf

from . import __version__
from . import operator
from .core.config import ConfigurationError


logger = logging.getLogger(__name__)


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        description="Kubernetes operator managing AWS IAM roles declared as Iamrole resources",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                              # Watch all namespaces, configuration from the config map
  %(prog)s --config config.yaml         # Use a local configuration file
  %(prog)s --namespace team-a -v        # Watch one namespace with debug logging
        """,
    )

    parser.add_argument(
        "--config",
        help="Path to a YAML configuration file (default: read the operator config map)",
    )

    parser.add_argument(
        "--namespace",
        action="append",
        default=[],
        help="Namespace to watch; repeat for several (default: all namespaces)",
    )

    parser.add_argument(
        "--profile", help="AWS profile name to use for credentials"
    )

    parser.add_argument(
        "--region", help="AWS region to use (overrides configuration)"
    )

    parser.add_argument(
        "--oidc-thumbprint",
        help="Certificate thumbprint of the cluster OIDC issuer, used to register it when IRSA is enabled",
    )

    parser.add_argument(
        "--webhook-port",
        type=int,
        default=operator.DEFAULT_WEBHOOK_PORT,
        help="Port of the admission webhook server",
    )

    parser.add_argument("--webhook-cert", help="TLS certificate file of the admission webhook")
    parser.add_argument("--webhook-key", help="TLS private key file of the admission webhook")

    parser.add_argument(
        "--liveness",
        help="Liveness endpoint, e.g. http://0.0.0.0:8080/healthz",
    )

    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    parser.add_argument(
        "--version",
        action="version",
        version=f"IAM Role Manager v{__version__}",
    )

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main application entry point.

    Returns:
        Exit code (0 for success, non-zero for error)
    """
    args = parse_arguments(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    operator.runtime.configure(
        config_path=args.config,
        profile_name=args.profile,
        region_name=args.region,
        oidc_thumbprint=args.oidc_thumbprint,
        webhook_port=args.webhook_port,
        webhook_certfile=args.webhook_cert,
        webhook_keyfile=args.webhook_key,
    )

    try:
        kopf.run(
            clusterwide=not args.namespace,
            namespaces=args.namespace,
            standalone=True,
            liveness_endpoint=args.liveness,
        )
    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        return 130
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
