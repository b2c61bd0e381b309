#!/usr/bin/env python3
"""
Client Certificate Issuer
Generates a key and CSR for a user, submits it to the cluster as a
CertificateSigningRequest, approves it and retrieves the signed certificate.

States: generated -> submitted -> approved -> retrieved
"""
import base64
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from kubernetes import client
from rich.console import Console

from cluster_utils.errors import IssuanceError, PollTimeoutError
from cluster_utils.kube_clients import API_CALL_ERRORS, describe_api_error
from cluster_utils.polling import DEFAULT_INTERVAL_SECONDS, DEFAULT_TIMEOUT_SECONDS, poll_until

console = Console()
logger = logging.getLogger(__name__)

KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
SIGNER_NAME = "kubernetes.io/kube-apiserver-client"
CSR_USAGES = ["client auth"]
# Smallest spec.expirationSeconds the API server accepts
MIN_EXPIRATION_SECONDS = 600

STATE_NEW = "new"
STATE_GENERATED = "generated"
STATE_SUBMITTED = "submitted"
STATE_APPROVED = "approved"
STATE_RETRIEVED = "retrieved"


def csr_object_name(username: str) -> str:
    return f"{username}-csr"


def generate_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=KEY_SIZE)


def private_key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def build_csr(key: rsa.RSAPrivateKey, username: str) -> x509.CertificateSigningRequest:
    """Builds a PKCS#10 request whose only subject attribute is CN=<username>."""
    return (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, username)]))
        .sign(key, hashes.SHA256())
    )


def build_csr_manifest(csr_name: str, csr_pem: bytes,
                       expiration_seconds: Optional[int] = None) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "request": base64.b64encode(csr_pem).decode("utf-8"),
        "signerName": SIGNER_NAME,
        "usages": list(CSR_USAGES),
    }
    if expiration_seconds:
        spec["expirationSeconds"] = int(expiration_seconds)
    return {
        "apiVersion": "certificates.k8s.io/v1",
        "kind": "CertificateSigningRequest",
        "metadata": {"name": csr_name},
        "spec": spec,
    }


def certificate_common_name(cert_pem: bytes) -> Optional[str]:
    cert = x509.load_pem_x509_certificate(cert_pem)
    attributes = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return attributes[0].value if attributes else None


def _condition_types(csr) -> set:
    status = getattr(csr, "status", None)
    conditions = getattr(status, "conditions", None) or []
    return {c.type for c in conditions}


def _write_file(path: Path, data: bytes, mode: int = 0o644):
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


class IssuedIdentity:
    """Key and signed certificate for a user, plus where they were written."""

    def __init__(self, username: str, key_pem: bytes, cert_pem: bytes,
                 key_path: Path, csr_path: Path, cert_path: Path, manifest_path: Path):
        self.username = username
        self.key_pem = key_pem
        self.cert_pem = cert_pem
        self.key_path = key_path
        self.csr_path = csr_path
        self.cert_path = cert_path
        self.manifest_path = manifest_path


class CertificateIssuer:
    """Drives a CertificateSigningRequest from creation to the issued certificate."""

    def __init__(self, certificates_v1: client.CertificatesV1Api,
                 output_dir: Path = Path("."),
                 timeout: float = DEFAULT_TIMEOUT_SECONDS,
                 interval: float = DEFAULT_INTERVAL_SECONDS,
                 expiration_seconds: Optional[int] = None,
                 sleep=None):
        self.certificates_v1 = certificates_v1
        self.output_dir = Path(output_dir)
        self.timeout = timeout
        self.interval = interval
        self.expiration_seconds = expiration_seconds
        self._poll_kwargs = {"sleep": sleep} if sleep else {}
        self.state = STATE_NEW

    def _poll(self, check, description: str):
        return poll_until(check, timeout=self.timeout, interval=self.interval,
                          description=description, **self._poll_kwargs)

    def generate(self, username: str):
        """Creates the key, CSR and CSR manifest files for `username`."""
        try:
            key = generate_private_key()
            csr = build_csr(key, username)
        except (ValueError, TypeError) as e:
            raise IssuanceError(f"Could not generate key/CSR for '{username}': {e}") from e

        key_pem = private_key_pem(key)
        csr_pem = csr.public_bytes(serialization.Encoding.PEM)
        manifest = build_csr_manifest(csr_object_name(username), csr_pem, self.expiration_seconds)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        key_path = self.output_dir / f"{username}.key"
        csr_path = self.output_dir / f"{username}.csr"
        manifest_path = self.output_dir / f"{csr_object_name(username)}.yaml"
        _write_file(key_path, key_pem, 0o600)
        _write_file(csr_path, csr_pem)
        _write_file(manifest_path, yaml.safe_dump(manifest, sort_keys=False).encode("utf-8"))

        self.state = STATE_GENERATED
        logger.info(f"Generated key and CSR for '{username}' in {self.output_dir}")
        return key_pem, manifest, key_path, csr_path, manifest_path

    def submit(self, manifest: Dict[str, Any]):
        """Deletes any previous request of the same name, then creates it."""
        name = manifest["metadata"]["name"]
        try:
            self.certificates_v1.delete_certificate_signing_request(name)
            logger.info(f"Deleted existing CertificateSigningRequest '{name}'")
        except API_CALL_ERRORS as e:
            if getattr(e, "status", None) != 404:
                raise IssuanceError(f"Could not delete existing CSR '{name}': {describe_api_error(e)}") from e

        try:
            self.certificates_v1.create_certificate_signing_request(body=manifest)
        except API_CALL_ERRORS as e:
            raise IssuanceError(f"Could not submit CSR '{name}': {describe_api_error(e)}") from e
        self.state = STATE_SUBMITTED
        logger.info(f"Submitted CertificateSigningRequest '{name}'")

    def _read_csr(self, name: str):
        try:
            return self.certificates_v1.read_certificate_signing_request(name)
        except API_CALL_ERRORS as e:
            if getattr(e, "status", None) == 404:
                return None
            raise IssuanceError(f"Could not read CSR '{name}': {describe_api_error(e)}") from e

    def approve(self, name: str):
        """Waits until the request is visible, then adds an Approved condition."""
        try:
            csr = self._poll(lambda: self._read_csr(name), f"CSR '{name}' to become available")
        except PollTimeoutError as e:
            raise IssuanceError(str(e)) from e

        if "Approved" not in _condition_types(csr):
            if csr.status is None:
                csr.status = client.V1CertificateSigningRequestStatus()
            conditions = list(csr.status.conditions or [])
            conditions.append(client.V1CertificateSigningRequestCondition(
                type="Approved",
                status="True",
                reason="UserOnboarding",
                message="Approved by k8s-user-onboarder",
                last_update_time=datetime.now(timezone.utc),
            ))
            csr.status.conditions = conditions
            try:
                self.certificates_v1.replace_certificate_signing_request_approval(name, csr)
            except API_CALL_ERRORS as e:
                raise IssuanceError(f"Could not approve CSR '{name}': {describe_api_error(e)}") from e
        self.state = STATE_APPROVED
        logger.info(f"Approved CertificateSigningRequest '{name}'")

    def _issued_certificate(self, name: str) -> Optional[str]:
        csr = self._read_csr(name)
        if csr is None:
            raise IssuanceError(f"CSR '{name}' disappeared before a certificate was issued.")
        rejected = _condition_types(csr) & {"Denied", "Failed"}
        if rejected:
            raise IssuanceError(f"CSR '{name}' was {', '.join(sorted(rejected)).lower()} by the cluster.")
        return csr.status.certificate if csr.status and csr.status.certificate else None

    def retrieve(self, name: str) -> bytes:
        """Waits for the signer to fill in status.certificate and decodes it."""
        try:
            encoded = self._poll(lambda: self._issued_certificate(name),
                                 f"certificate for CSR '{name}'")
        except PollTimeoutError as e:
            raise IssuanceError(f"No certificate issued: {e}") from e
        try:
            cert_pem = base64.b64decode(encoded)
        except (ValueError, TypeError) as e:
            raise IssuanceError(f"CSR '{name}' holds an undecodable certificate: {e}") from e
        self.state = STATE_RETRIEVED
        return cert_pem

    def issue(self, username: str) -> IssuedIdentity:
        """Runs the full issuance for `username` and writes `<username>.crt`."""
        console.print(f"Generating key and CSR for user '{username}'...")
        key_pem, manifest, key_path, csr_path, manifest_path = self.generate(username)
        name = manifest["metadata"]["name"]

        self.submit(manifest)
        self.approve(name)
        cert_pem = self.retrieve(name)

        try:
            common_name = certificate_common_name(cert_pem)
        except ValueError as e:
            raise IssuanceError(f"CSR '{name}' holds an invalid certificate: {e}") from e
        if common_name != username:
            raise IssuanceError(f"Issued certificate has CN={common_name!r}, expected {username!r}.")

        cert_path = self.output_dir / f"{username}.crt"
        _write_file(cert_path, cert_pem)
        console.print(f"[green]✓[/green] Certificate for '{username}' issued: {cert_path}")
        return IssuedIdentity(username, key_pem, cert_pem, key_path, csr_path, cert_path, manifest_path)
