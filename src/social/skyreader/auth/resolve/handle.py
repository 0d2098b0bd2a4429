"""AT Protocol handle and DID resolution utilities.

Resolves AT Protocol handles to DIDs using DNS TXT records and HTTPS well-known endpoints.
Supports both did:plc and did:web DID methods for complete subject resolution.

Failures surface as typed errors (:class:`HandleResolutionError`,
:class:`DidResolutionError`); no function in this module invents a DID or a
PDS location when resolution fails.
"""

import logging
import re
from enum import IntEnum
from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
from aiodns import DNSResolver
from aiodns.error import DNSError
from typing import Optional, Any, Dict, List

from social.skyreader.auth.atproto.errors import (
    DidResolutionError,
    HandleResolutionError,
)

logger = logging.getLogger(__name__)

DEFAULT_DNS_TIMEOUT = 10.0

DID_PATTERN = re.compile(r"^did:(plc|web):[A-Za-z0-9._:%-]+$")


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input.

    Contains the classified subject type and normalized subject string.
    """

    subject_type: SubjectType
    subject: str


class ResolvedSubject(BaseModel):
    """Resolved AT Protocol subject with all identifiers.

    Contains DID, handle, and PDS endpoint for a fully resolved subject.
    """

    did: str
    handle: str
    pds: str


def is_valid_did(value: Optional[str]) -> bool:
    return value is not None and DID_PATTERN.match(value) is not None


def normalize_handle(value: str, default_suffix: str = "bsky.social") -> str:
    """Normalize user input into a fully qualified handle.

    Strips whitespace and the ``at://`` and ``@`` prefixes, lower-cases, and
    appends ``default_suffix`` to bare names such as ``alice``.
    """
    handle = value.strip()
    handle = handle.removeprefix("at://")
    handle = handle.removeprefix("@")
    handle = handle.lower()
    if handle and "." not in handle:
        handle = f"{handle}.{default_suffix}"
    return handle


async def resolve_handle_dns(
    handle: str,
    resolver: Optional[DNSResolver] = None,
    timeout: float = DEFAULT_DNS_TIMEOUT,
) -> Optional[str]:
    """Resolve AT Protocol handle to DID using DNS TXT record.

    Queries _atproto.{handle} TXT record and extracts DID from did= prefix.

    Args:
        handle: AT Protocol handle to resolve
        resolver: DNS resolver to use, a new one is created when omitted
        timeout: Seconds the created resolver waits for an answer, one try

    Returns:
        DID string if found, None if no usable record exists
    """
    if resolver is None:
        resolver = DNSResolver(timeout=timeout, tries=1)
    try:
        results = await resolver.query(f"_atproto.{handle}", "TXT")
    except DNSError as e:
        logger.debug("DNS lookup for %s failed: %s", handle, e)
        return None

    for result in results or []:
        text = result.text
        if isinstance(text, bytes):
            text = text.decode("utf-8", errors="replace")
        text = text.strip().strip('"')
        if text.startswith("did="):
            return text.removeprefix("did=").strip()
    return None


async def resolve_handle_http(session: ClientSession, handle: str) -> Optional[str]:
    """Resolve AT Protocol handle to DID using HTTPS well-known endpoint.

    Fetches DID from https://{handle}/.well-known/atproto-did endpoint.

    Args:
        session: HTTP client session
        handle: AT Protocol handle to resolve

    Returns:
        DID string if found, None if resolution fails
    """
    try:
        async with session.get(f"https://{handle}/.well-known/atproto-did") as resp:
            if resp.status != 200:
                return None
            body = await resp.text()
            if body:
                return body.strip()
            return None
    except (ClientError, TimeoutError) as e:
        logger.debug("HTTP handle lookup for %s failed: %s", handle, e)
        return None


async def resolve_handle_to_did(
    session: ClientSession,
    handle: str,
    resolver: Optional[DNSResolver] = None,
    dns_timeout: float = DEFAULT_DNS_TIMEOUT,
) -> str:
    """Resolve AT Protocol handle to DID, DNS first and HTTPS as fallback.

    The HTTPS well-known endpoint is only consulted when DNS yields nothing.

    Raises:
        HandleResolutionError: Neither method produced a well-formed did:plc
            or did:web identifier.
    """
    did = await resolve_handle_dns(handle, resolver=resolver, timeout=dns_timeout)
    if did is None:
        did = await resolve_handle_http(session, handle)

    if did is None:
        raise HandleResolutionError(f"no DID published for {handle}")

    if not is_valid_did(did):
        raise HandleResolutionError(f"malformed DID for {handle}")

    return did


def handle_predicate(value: str) -> bool:
    """Check if value is an AT Protocol handle reference.

    Args:
        value: String to check

    Returns:
        True if value starts with at:// prefix
    """
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if service entry is an AT Protocol PDS.

    Matches on either the service type or the ``#atproto_pds`` fragment id.

    Args:
        value: Service dictionary from DID document

    Returns:
        True if service is a PDS entry with an endpoint
    """
    if not isinstance(value, dict) or not value.get("serviceEndpoint"):
        return False
    return value.get("type", None) == "AtprotoPersonalDataServer" or str(
        value.get("id", "")
    ).endswith("#atproto_pds")


def did_web_document_url(did: str) -> str:
    """Location of the DID document for a did:web identifier.

    ``did:web:example.com`` maps to ``https://example.com/.well-known/did.json``
    and ``did:web:example.com:u:alice`` to ``https://example.com/u/alice/did.json``.
    Percent-encoded ports (``%3A``) are decoded.
    """
    parts = did.removeprefix("did:web:").split(":")
    parts[0] = parts[0].replace("%3A", ":").replace("%3a", ":")

    if len(parts) == 1:
        parts.append(".well-known")

    return "https://{inner}/did.json".format(inner="/".join(parts))


async def fetch_did_document(
    session: ClientSession, plc_hostname: str, did: str
) -> Dict[str, Any]:
    """Fetch the DID document for a did:plc or did:web identifier.

    Raises:
        DidResolutionError: Unsupported method, transport failure or a
            non-JSON or non-200 answer.
    """
    if did.startswith("did:plc:"):
        url = f"https://{plc_hostname}/{did}"
    elif did.startswith("did:web:"):
        url = did_web_document_url(did)
    else:
        raise DidResolutionError(f"unsupported DID method for {did}")

    try:
        async with session.get(url) as resp:
            if resp.status != 200:
                raise DidResolutionError(f"{url} returned {resp.status}")
            body = await resp.json(content_type=None)
    except (ClientError, TimeoutError, ValueError) as e:
        raise DidResolutionError(f"could not fetch {url}: {e}") from e

    if not isinstance(body, dict):
        raise DidResolutionError(f"malformed DID document at {url}")
    return body


def pds_endpoint(document: Dict[str, Any], did: str) -> str:
    """Return the validated PDS endpoint advertised in a DID document.

    Raises:
        DidResolutionError: No PDS service entry, or its endpoint is not an
            http(s) URL string.
    """
    pds = next(filter(pds_predicate, document.get("service", []) or []), None)
    if pds is None:
        raise DidResolutionError(f"no PDS service in DID document of {did}")
    endpoint = pds.get("serviceEndpoint")
    if not isinstance(endpoint, str) or not endpoint.startswith(
        ("https://", "http://")
    ):
        raise DidResolutionError(f"malformed PDS endpoint in DID document of {did}")
    return endpoint.rstrip("/")


def document_handles(document: Dict[str, Any]) -> List[str]:
    """Handles claimed by a DID document, lowercased, in ``alsoKnownAs`` order."""
    return [
        value.removeprefix("at://").lower()
        for value in document.get("alsoKnownAs", []) or []
        if isinstance(value, str) and handle_predicate(value)
    ]


async def resolve_did_to_pds(
    session: ClientSession, plc_hostname: str, did: str
) -> str:
    """Return the PDS endpoint advertised in the DID document.

    Raises:
        DidResolutionError: No document, or no usable PDS service entry in it.
    """
    document = await fetch_did_document(session, plc_hostname, did)
    return pds_endpoint(document, did)


async def resolve_did(
    session: ClientSession,
    plc_hostname: str,
    did: str,
    expected_handle: Optional[str] = None,
) -> ResolvedSubject:
    """Resolve DID to complete subject information.

    Without ``expected_handle`` the handle is taken from the first ``at://``
    entry of ``alsoKnownAs``, and documents without one resolve with the DID
    standing in for the handle. With it, the document must claim that handle.

    Args:
        session: HTTP client session
        plc_hostname: PLC directory hostname for did:plc resolution
        did: DID to resolve
        expected_handle: Handle that resolved to ``did``

    Raises:
        DidResolutionError: The DID could not be resolved to a PDS.
        HandleResolutionError: The document does not claim ``expected_handle``.
    """
    document = await fetch_did_document(session, plc_hostname, did)
    pds = pds_endpoint(document, did)
    handles = document_handles(document)

    if expected_handle is not None:
        if expected_handle.lower() not in handles:
            raise HandleResolutionError(
                f"DID document of {did} does not claim {expected_handle}"
            )
        handle = expected_handle.lower()
    else:
        handle = handles[0] if handles else did

    return ResolvedSubject(did=did, handle=handle, pds=pds)


async def resolve_subject(
    session: ClientSession,
    plc_hostname: str,
    subject: str,
    default_suffix: str = "bsky.social",
    resolver: Optional[DNSResolver] = None,
    dns_timeout: float = DEFAULT_DNS_TIMEOUT,
) -> ResolvedSubject:
    """Resolve AT Protocol subject (handle or DID) to complete information.

    Parses input, resolves handle to DID if needed, then resolves DID. A
    handle only counts when the DID document claims it back in
    ``alsoKnownAs``.

    Args:
        session: HTTP client session
        plc_hostname: PLC directory hostname
        subject: Handle or DID to resolve
        default_suffix: Suffix for bare handles
        dns_timeout: Seconds to wait for the ``_atproto`` TXT lookup

    Raises:
        HandleResolutionError: The handle has no valid DID, or the DID does
            not claim the handle.
        DidResolutionError: The DID could not be resolved to a PDS.
    """
    parsed_subject = parse_input(subject, default_suffix=default_suffix)
    if parsed_subject is None:
        raise HandleResolutionError("empty subject")

    if parsed_subject.subject_type == SubjectType.hostname:
        did = await resolve_handle_to_did(
            session, parsed_subject.subject, resolver=resolver, dns_timeout=dns_timeout
        )
        return await resolve_did(
            session, plc_hostname, did, expected_handle=parsed_subject.subject
        )

    if not is_valid_did(parsed_subject.subject):
        raise DidResolutionError(f"malformed DID {parsed_subject.subject}")

    return await resolve_did(session, plc_hostname, parsed_subject.subject)


def parse_input(
    subject: str, default_suffix: str = "bsky.social"
) -> Optional[ParsedSubject]:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string, None for empty input
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if not subject:
        return None

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(
        subject_type=SubjectType.hostname,
        subject=normalize_handle(subject, default_suffix),
    )
