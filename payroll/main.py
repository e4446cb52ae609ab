"""CLI entrypoint for the payroll backend."""
from __future__ import annotations

import json
import logging
import sys
from typing import Optional

from .api import create_app, run_api
from .auth import AuthController
from .challenges import ChallengeIssuer, ChallengeStore
from .config import PayrollSettings
from .disbursement import DisbursementEngine
from .gateway import DryRunSigningGateway, HttpSigningGateway, SigningGateway
from .ledger import LocalObjectStore, ObjectStore, S3ObjectStore, TransactionLedger
from .secret_store import (
    AwsSecretsManagerProvider,
    FileSecretProvider,
    SecretProvider,
    StaticSecretProvider,
)
from .tokens import SessionIssuer
from .verifier import EthereumSignatureVerifier


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s:%(lineno)d | %(message)s",
        stream=sys.stdout,
    )


def build_secret_provider(settings: PayrollSettings) -> SecretProvider:
    if settings.secret_backend == "aws":
        return AwsSecretsManagerProvider(
            region=settings.aws_region,
            cache_seconds=settings.secret_cache_seconds,
            timeout_seconds=settings.storage_timeout_seconds,
        )
    if settings.secret_backend == "static":
        inline = json.loads(settings.secrets_inline or "{}")
        if not isinstance(inline, dict):
            raise ValueError("PAYROLL_SECRETS_INLINE must be a JSON object")
        return StaticSecretProvider(inline)
    return FileSecretProvider(settings.secrets_path)


def build_object_store(settings: PayrollSettings) -> ObjectStore:
    if settings.ledger_backend == "s3":
        return S3ObjectStore(
            str(settings.s3_bucket_name),
            region=settings.aws_region,
            timeout_seconds=settings.storage_timeout_seconds,
        )
    return LocalObjectStore(settings.ledger_root)


def build_gateway(settings: PayrollSettings, logger: logging.Logger) -> SigningGateway:
    if settings.gateway_url and not settings.gateway_dry_run:
        logger.info("Signing gateway endpoint=%s", settings.gateway_url)
        return HttpSigningGateway(settings.gateway_url, timeout_seconds=settings.gateway_timeout_seconds)
    logger.info("Signing gateway running in dry-run mode")
    return DryRunSigningGateway()


def main(settings: Optional[PayrollSettings] = None) -> None:
    settings = settings or PayrollSettings()
    configure_logging(settings.log_level)
    logger = logging.getLogger(__name__)
    logger.info("Starting payroll backend")

    secrets = build_secret_provider(settings)
    ledger = TransactionLedger(build_object_store(settings), namespace=settings.ledger_namespace)
    engine = DisbursementEngine(
        build_gateway(settings, logger),
        ledger,
        secrets,
        credentials_secret_name=settings.external_api_secret_name,
        max_concurrency=settings.gateway_max_concurrency,
        max_attempts=settings.gateway_max_attempts,
        retry_backoff_seconds=settings.gateway_retry_backoff_seconds,
    )

    store = ChallengeStore()
    sessions = SessionIssuer(
        secrets,
        secret_name=settings.jwt_secret_name,
        ttl_seconds=settings.session_ttl_seconds,
        algorithm=settings.jwt_algorithm,
    )
    auth = AuthController(
        ChallengeIssuer(store, domain=settings.auth_domain, ttl_seconds=settings.challenge_ttl_seconds),
        store,
        EthereumSignatureVerifier(),
        sessions,
    )

    app = create_app(engine, ledger, auth, sessions, settings)
    logger.info("HTTP API available at http://%s:%s", settings.api_host, settings.api_port)
    run_api(app, settings)


if __name__ == "__main__":
    main()
