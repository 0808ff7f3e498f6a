"""SOAP/XML protocol module.

This module provides :class:`SoapModule`, which implements the ``soap``
protocol type. Request bodies are wrapped in a SOAP 1.1 or 1.2 envelope
unless the caller already sent one. Authentication is one of:

* ``none``
* ``ws-security-username`` -- a WS-Security ``UsernameToken`` in the SOAP
  header, with the password sent as ``PasswordText`` or as
  ``PasswordDigest = Base64(SHA-1(nonce + created + password))``, and an
  optional ``wsu:Timestamp``.
* ``basic-auth`` / ``bearer-token`` -- HTTP ``Authorization`` headers.
* ``custom-header`` -- a caller-supplied XML fragment placed in the SOAP
  header.

SOAP faults are reported as failed results carrying the fault code and
string, whatever HTTP status the service answered with.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta
from typing import Any, Optional
from xml.sax.saxutils import escape

from handshake_engine.auth.base import ProtocolModule, field_bool, field_int
from handshake_engine.auth.oauth import basic_auth_header
from handshake_engine.auth.redirect import url_field
from handshake_engine.exceptions import HandshakeError, ValidationError_
from handshake_engine.models import (
    AuthFlowStep,
    AuthInjection,
    CredentialRecord,
    ErrorCode,
    ExecutionContext,
    ExecutionResult,
    FieldDefinition,
    FieldKind,
    FieldOption,
    HealthCheckResult,
    ProtocolCapabilities,
    ProtocolMetadata,
    StepKind,
    TokenStatus,
    VisibilityOperator,
    VisibilityRule,
)

logger = logging.getLogger(__name__)

SOAP_11_NS = "http://schemas.xmlsoap.org/soap/envelope/"
SOAP_12_NS = "http://www.w3.org/2003/05/soap-envelope"

WSSE_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-secext-1.0.xsd"
WSU_NS = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-wssecurity-utility-1.0.xsd"
_TOKEN_PROFILE = "http://docs.oasis-open.org/wss/2004/01/oasis-200401-wss-username-token-profile-1.0"
_BASE64_BINARY = (
    "http://docs.oasis-open.org/wss/2004/01/"
    "oasis-200401-wss-soap-message-security-1.0#Base64Binary"
)

_XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def escape_xml(text: str) -> str:
    """Escape the five XML special characters."""
    return escape(text, _XML_ENTITIES)


def _timestamp(moment: datetime) -> str:
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def password_digest(nonce: bytes, created: str, password: str) -> str:
    """``Base64(SHA-1(nonce + created + password))`` per the UsernameToken profile."""
    digest = hashlib.sha1(nonce + created.encode("utf-8") + password.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def content_type(version: str, soap_action: Optional[str] = None) -> str:
    """The ``Content-Type`` for a SOAP *version*; 1.2 carries the action in it."""
    if version == "1.2":
        value = "application/soap+xml; charset=utf-8"
        if soap_action:
            value += f'; action="{soap_action}"'
        return value
    return "text/xml; charset=utf-8"


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child_text(element: ET.Element, *names: str) -> Optional[str]:
    for child in element.iter():
        if _local(child.tag) in names:
            text = "".join(child.itertext()).strip()
            if text:
                return text
    return None


def parse_soap_response(xml_text: str) -> dict[str, Any]:
    """Split a SOAP response into its body and, when present, its fault.

    Returns:
        ``{"body": <inner XML of soap:Body>}`` or
        ``{"fault": {"code", "message", "actor", "detail"}}``. Text that is not
        well-formed XML is returned as ``{"body": xml_text}``.
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        return {"body": xml_text}

    body = next((el for el in root.iter() if _local(el.tag) == "Body"), None)
    if body is None:
        return {"body": xml_text}

    fault = next((el for el in body.iter() if _local(el.tag) == "Fault"), None)
    if fault is not None:
        return {
            "fault": {
                "code": _child_text(fault, "faultcode", "Value") or "Unknown",
                "message": _child_text(fault, "faultstring", "Text") or "Unknown error",
                "actor": _child_text(fault, "faultactor", "Role"),
                "detail": _child_text(fault, "detail", "Detail"),
            }
        }
    inner = "".join(ET.tostring(child, encoding="unicode") for child in body)
    return {"body": inner.strip()}


class SoapModule(ProtocolModule):
    """Call SOAP web services with WS-Security or HTTP authentication."""

    def metadata(self) -> ProtocolMetadata:
        return ProtocolMetadata(
            type="soap",
            display_name="SOAP/XML Web Service",
            description="SOAP 1.1/1.2 web services with WS-Security, Basic or Bearer authentication.",
            version="1.0.0",
            capabilities=ProtocolCapabilities(requires_server_side=True),
            use_cases=[
                "Enterprise integrations",
                "Legacy banking and payment gateways",
                "Government services",
            ],
            example_platforms=["SAP", "Salesforce SOAP API", "Workday", "PayPal Classic"],
        )

    def required_fields(self) -> list[FieldDefinition]:
        user_pass = VisibilityRule(
            field="authMethod",
            value=["ws-security-username", "basic-auth"],
            operator=VisibilityOperator.IN,
        )
        return [
            url_field(
                "endpoint",
                "SOAP Endpoint",
                required=True,
                placeholder="https://service.example.com/soap",
                group="endpoint",
                order=1,
            ),
            FieldDefinition(
                id="soapVersion",
                label="SOAP Version",
                kind=FieldKind.SELECT,
                required=True,
                default="1.1",
                options=[
                    FieldOption(value="1.1", label="SOAP 1.1 (Most Common)"),
                    FieldOption(value="1.2", label="SOAP 1.2"),
                ],
                group="protocol",
                order=2,
            ),
            FieldDefinition(
                id="authMethod",
                label="Authentication Method",
                kind=FieldKind.SELECT,
                required=True,
                default="none",
                options=[
                    FieldOption(value="none", label="No Authentication"),
                    FieldOption(value="ws-security-username", label="WS-Security UsernameToken"),
                    FieldOption(value="basic-auth", label="HTTP Basic Authentication"),
                    FieldOption(value="bearer-token", label="HTTP Bearer Token"),
                    FieldOption(value="custom-header", label="Custom SOAP Header"),
                ],
                group="authentication",
                order=3,
            ),
            FieldDefinition(
                id="username", label="Username", required=True,
                group="authentication", order=5, visible_when=user_pass,
            ),
            FieldDefinition(
                id="password", label="Password", kind=FieldKind.SECRET, required=True,
                group="authentication", order=6, visible_when=user_pass,
            ),
            FieldDefinition(
                id="bearerToken",
                label="Bearer Token",
                kind=FieldKind.SECRET,
                required=True,
                group="authentication",
                order=8,
                visible_when=VisibilityRule(field="authMethod", value="bearer-token"),
            ),
            FieldDefinition(
                id="customHeader",
                label="Custom SOAP Header",
                kind=FieldKind.TEXTAREA,
                required=True,
                sensitive=True,
                description="XML placed inside <soap:Header>.",
                group="authentication",
                order=9,
                visible_when=VisibilityRule(field="authMethod", value="custom-header"),
            ),
        ]

    def optional_fields(self) -> list[FieldDefinition]:
        ws_security = VisibilityRule(field="authMethod", value="ws-security-username")
        return [
            url_field("wsdlUrl", "WSDL URL", description="Used for health checks.", group="endpoint", order=4),
            FieldDefinition(
                id="passwordType",
                label="Password Type",
                kind=FieldKind.SELECT,
                default="PasswordText",
                options=[
                    FieldOption(value="PasswordText", label="Plain Text"),
                    FieldOption(value="PasswordDigest", label="Password Digest (SHA-1)"),
                ],
                group="security",
                order=7,
                visible_when=ws_security,
            ),
            FieldDefinition(
                id="soapAction",
                label="SOAPAction",
                placeholder="http://example.com/GetUser",
                group="protocol",
                order=10,
            ),
            FieldDefinition(id="targetNamespace", label="Target Namespace", group="protocol", order=11),
            FieldDefinition(
                id="includeTimestamp",
                label="Include Timestamp",
                kind=FieldKind.CHECKBOX,
                default=True,
                group="security",
                order=12,
                visible_when=ws_security,
            ),
            FieldDefinition(
                id="timestampTtl",
                label="Timestamp TTL (seconds)",
                kind=FieldKind.NUMBER,
                default=300,
                min=60,
                max=3600,
                group="security",
                order=13,
                visible_when=VisibilityRule(field="includeTimestamp", value=True),
            ),
            FieldDefinition(
                id="timeout",
                label="Timeout (ms)",
                kind=FieldKind.NUMBER,
                default=30000,
                min=1000,
                max=300000,
                group="advanced",
                order=14,
            ),
        ]

    def _method(self, record: CredentialRecord) -> str:
        return str(self.setting(record, "authMethod"))

    def _version(self, record: CredentialRecord) -> str:
        return str(self.setting(record, "soapVersion"))

    # ------------------------------------------------------------------ #
    # Envelope
    # ------------------------------------------------------------------ #

    def username_token(self, record: CredentialRecord, nonce: Optional[bytes] = None) -> str:
        """Render the ``wsse:Security`` header block for *record*."""
        username = record.get("username")
        password = record.get("password")
        if not username or not password:
            raise ValidationError_("Username and password are required for WS-Security")
        nonce = nonce if nonce is not None else secrets.token_bytes(16)
        now = self.now()
        created = _timestamp(now)

        if self.setting(record, "passwordType") == "PasswordDigest":
            value = password_digest(nonce, created, str(password))
            password_type = f"{_TOKEN_PROFILE}#PasswordDigest"
        else:
            value = str(password)
            password_type = f"{_TOKEN_PROFILE}#PasswordText"

        timestamp = ""
        if field_bool(record, "includeTimestamp", True):
            expires = _timestamp(now + timedelta(seconds=field_int(record, "timestampTtl", 300)))
            timestamp = (
                f'<wsu:Timestamp xmlns:wsu="{WSU_NS}">'
                f"<wsu:Created>{created}</wsu:Created>"
                f"<wsu:Expires>{expires}</wsu:Expires>"
                "</wsu:Timestamp>"
            )
        return (
            f'<wsse:Security xmlns:wsse="{WSSE_NS}" soap:mustUnderstand="1">'
            f"{timestamp}"
            "<wsse:UsernameToken>"
            f"<wsse:Username>{escape_xml(str(username))}</wsse:Username>"
            f'<wsse:Password Type="{password_type}">{escape_xml(value)}</wsse:Password>'
            f'<wsse:Nonce EncodingType="{_BASE64_BINARY}">'
            f"{base64.b64encode(nonce).decode('ascii')}</wsse:Nonce>"
            f'<wsu:Created xmlns:wsu="{WSU_NS}">{created}</wsu:Created>'
            "</wsse:UsernameToken>"
            "</wsse:Security>"
        )

    def build_envelope(self, record: CredentialRecord, body: str) -> str:
        """Wrap *body* in a SOAP envelope carrying the configured security header."""
        namespace = SOAP_12_NS if self._version(record) == "1.2" else SOAP_11_NS
        method = self._method(record)
        header = ""
        if method == "ws-security-username":
            header = self.username_token(record)
        elif method == "custom-header":
            header = str(record.get("customHeader", ""))
        header_block = f"<soap:Header>{header}</soap:Header>" if header else ""
        return (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f'<soap:Envelope xmlns:soap="{namespace}">'
            f"{header_block}"
            f"<soap:Body>{body}</soap:Body>"
            "</soap:Envelope>"
        )

    # ------------------------------------------------------------------ #
    # Authentication
    # ------------------------------------------------------------------ #

    async def authenticate(self, record: CredentialRecord, step: int = 1) -> AuthFlowStep:
        """SOAP credentials are checked on first use; configuration completes immediately."""
        return AuthFlowStep(
            kind=StepKind.COMPLETE,
            title="SOAP Service Configured",
            description="Your SOAP service is ready to use.",
            data={
                "endpoint": record.get("endpoint"),
                "soap_version": self._version(record),
                "auth_method": self._method(record),
            },
        )

    def inject_authentication(self, context: ExecutionContext) -> AuthInjection:
        record = context.credentials
        version = self._version(record)
        action = record.get("soapAction")
        headers = {"Content-Type": content_type(version, action)}
        if action and version != "1.2":
            headers["SOAPAction"] = f'"{action}"'

        method = self._method(record)
        if method == "basic-auth":
            headers["Authorization"] = basic_auth_header(
                str(record.get("username", "")), str(record.get("password", ""))
            )
        elif method == "bearer-token":
            token = record.get("bearerToken")
            if not token:
                raise ValidationError_("Bearer token is required for this authentication method")
            headers["Authorization"] = f"Bearer {token}"
        return AuthInjection(headers=headers)

    def base_url(self, record: CredentialRecord) -> Optional[str]:
        return record.get("endpoint")

    def _envelope_for(self, record: CredentialRecord, body: Any) -> str:
        if body is None:
            return self.build_envelope(record, "")
        if isinstance(body, str):
            text = body
        else:
            tag, data = "Request", body
            if isinstance(body, dict) and len(body) == 1:
                tag, data = next(iter(body.items()))
            text = ET.tostring(_dict_to_xml(str(tag), data), encoding="unicode")
        if "Envelope" in text:
            return text
        return self.build_envelope(record, text)

    async def execute_request(self, context: ExecutionContext) -> ExecutionResult:
        record = context.credentials
        try:
            envelope = self._envelope_for(record, context.body)
            injection = self.inject_authentication(context)
        except HandshakeError as exc:
            return ExecutionResult.failure(str(exc), exc.error_code or ErrorCode.VALIDATION_ERROR)

        call = context.model_copy(
            update={
                "url": context.url or str(record.get("endpoint", "")),
                "method": "POST",
                "body": envelope,
                "timeout_ms": context.timeout_ms or field_int(record, "timeout", 30000),
            }
        )
        result = await self.pipeline.execute(
            call, injection, base_url=self.base_url(record), retry_policy=self.retry_policy(record)
        )
        if not result.raw_body:
            return result

        parsed = parse_soap_response(result.raw_body)
        fault = parsed.get("fault")
        if fault:
            logger.debug("SOAP fault %s from %s", fault["code"], record.get("endpoint"))
            return result.model_copy(
                update={
                    "success": False,
                    "body": parsed,
                    "error": f"SOAP Fault {fault['code']}: {fault['message']}",
                    "error_code": result.error_code or ErrorCode.PROVIDER_ERROR,
                }
            )
        return result.model_copy(update={"body": parsed})

    # ------------------------------------------------------------------ #
    # Health
    # ------------------------------------------------------------------ #

    async def health_check(self, record: CredentialRecord) -> HealthCheckResult:
        """Fetch the WSDL when configured, otherwise POST a ``<ping/>`` envelope."""
        wsdl_url = record.get("wsdlUrl")
        if wsdl_url:
            result, latency = await self.probe(record, str(wsdl_url))
            if not result.success:
                return HealthCheckResult(
                    healthy=False,
                    message=f"WSDL fetch failed: {result.error}",
                    latency_ms=latency,
                    token_status=(
                        TokenStatus.INVALID if result.status_code in (401, 403) else TokenStatus.VALID
                    ),
                    token_expires_in=0,
                )
            text = result.raw_body
            has_definitions = "definitions" in text or "description" in text
            return HealthCheckResult(
                healthy=has_definitions,
                message="WSDL retrieved successfully" if has_definitions else "Invalid WSDL response",
                latency_ms=latency,
                token_status=TokenStatus.VALID,
                details={"wsdl_url": wsdl_url, "has_definitions": has_definitions},
            )

        try:
            envelope = self.build_envelope(record, "<ping/>")
        except HandshakeError as exc:
            return HealthCheckResult(healthy=False, message=str(exc), token_status=TokenStatus.MISSING)
        result, latency = await self.probe(
            record, str(record.get("endpoint", "")), method="POST", body=envelope
        )
        if result.status_code == 0:
            return HealthCheckResult(
                healthy=False,
                message=result.error or "Connection failed",
                latency_ms=latency,
                token_status=TokenStatus.INVALID,
                token_expires_in=0,
            )
        rejected = result.status_code in (401, 403)
        return HealthCheckResult(
            healthy=not rejected,
            message=f"Endpoint reachable (HTTP {result.status_code})",
            latency_ms=latency,
            token_status=TokenStatus.INVALID if rejected else TokenStatus.VALID,
        )


def _dict_to_xml(tag: str, data: Any) -> ET.Element:
    element = ET.Element(tag)
    if isinstance(data, dict):
        for key, value in data.items():
            element.append(_dict_to_xml(str(key), value))
    elif isinstance(data, list):
        for item in data:
            element.append(_dict_to_xml("item", item))
    elif data is not None:
        element.text = str(data)
    return element
