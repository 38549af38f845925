"""
Indicator extraction from free text.

Text is refanged first (``hxxp``, ``[.]``, ``[:]``, ``[@]``), then every IOC
type is matched with its own pattern and filtered: non-public IPs, benign or
malformed domains and malformed emails are dropped, and hashes are bucketed
strictly by hex length so a SHA-256 never shows up as an MD5.
"""
from __future__ import annotations

import logging
import re
from typing import Dict, FrozenSet, Iterable, List, Optional

from threatwatch.models import HashKind, IOCSet, IOCType
from threatwatch.normalize import hash_kind, is_public_ip, is_valid_email, is_valid_hash, parse_ip, refang

log = logging.getLogger(__name__)

IPV4_RE = re.compile(
    r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
    r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
)
URL_RE = re.compile(r"\b(?:https?|ftp)://[^\s<>\"']+", re.IGNORECASE)
EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
DOMAIN_RE = re.compile(r"\b(?:[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?\.)+[a-z]{2,63}\b", re.IGNORECASE)
HASH_RES: Dict[HashKind, "re.Pattern[str]"] = {
    HashKind.MD5: re.compile(r"\b[a-fA-F0-9]{32}\b"),
    HashKind.SHA1: re.compile(r"\b[a-fA-F0-9]{40}\b"),
    HashKind.SHA256: re.compile(r"\b[a-fA-F0-9]{64}\b"),
}
CVE_RE = re.compile(r"\bCVE-\d{4}-\d{4,7}\b", re.IGNORECASE)
CRYPTO_RES = [
    re.compile(r"\b[13][a-km-zA-HJ-NP-Z1-9]{25,34}\b"),
    re.compile(r"\bbc1[ac-hj-np-z02-9]{11,71}\b"),
    re.compile(r"\b0x[a-fA-F0-9]{40}\b"),
]
WINDOWS_RES = [
    re.compile(r"\b[A-Za-z]:\\(?:[^\\/:*?\"<>|\s]+\\)*[^\\/:*?\"<>|\s]*"),
    re.compile(
        r"\b(?:HKEY_LOCAL_MACHINE|HKLM|HKEY_CURRENT_USER|HKCU|HKEY_CLASSES_ROOT|HKCR|HKEY_USERS|HKU)\\[^\s<>\"']+",
        re.IGNORECASE,
    ),
    re.compile(r"\\BaseNamedObjects\\[A-Za-z0-9_\-]+", re.IGNORECASE),
]
_TOKEN_SPLIT_RE = re.compile(r"[\s,;|()\[\]{}<>\"']+")

_TRAILING_PUNCT = ".,;:!?)]}'\""

BENIGN_DOMAINS: FrozenSet[str] = frozenset(
    {
        "google.com", "facebook.com", "twitter.com", "youtube.com", "instagram.com",
        "linkedin.com", "microsoft.com", "apple.com", "amazon.com", "reddit.com",
        "wikipedia.org", "github.com", "stackoverflow.com", "w3.org", "mozilla.org",
        "cloudflare.com", "example.com", "example.org", "example.net", "test.com",
    }
)

# common file extensions that the domain pattern would otherwise pick up
FILE_EXTENSIONS: FrozenSet[str] = frozenset(
    {
        "exe", "dll", "sys", "bin", "txt", "log", "rar", "gz", "tar", "php", "asp",
        "aspx", "jsp", "js", "css", "html", "htm", "json", "xml", "yml", "yaml",
        "py", "bat", "cmd", "vbs", "doc", "docx", "xls", "xlsx", "pdf", "jpg",
        "jpeg", "png", "gif", "csv", "sql", "conf", "cfg", "ini", "tmp", "dat",
        "lnk", "jar", "apk", "msi", "iso", "img",
    }
)


class IOCExtractor:
    def __init__(
        self,
        benign_domains: Iterable[str] = BENIGN_DOMAINS,
        min_domain_length: int = 4,
        max_domain_length: int = 253,
    ) -> None:
        self.benign_domains = frozenset(d.lower() for d in benign_domains)
        self.min_domain_length = min_domain_length
        self.max_domain_length = max_domain_length

    def extract(self, text: Optional[str]) -> IOCSet:
        if not text:
            return IOCSet()
        text = refang(text)

        iocs = IOCSet(
            ips=self._ips(text),
            domains=self._domains(text),
            urls=[u for u in (m.group(0).rstrip(_TRAILING_PUNCT) for m in URL_RE.finditer(text)) if "://" in u],
            emails=[e.lower() for e in (m.group(0) for m in EMAIL_RE.finditer(text)) if is_valid_email(e)],
            hashes=self._hashes(text),
            cves=[m.group(0).upper() for m in CVE_RE.finditer(text)],
            crypto_addresses=[
                m.group(0) for rx in CRYPTO_RES for m in rx.finditer(text) if not is_valid_hash(m.group(0))
            ],
            windows_artifacts=[
                m.group(0).rstrip(_TRAILING_PUNCT) for rx in WINDOWS_RES for m in rx.finditer(text)
            ],
        )
        if not iocs.is_empty():
            log.debug("iocs_extracted total=%d types=%s", iocs.total(), sorted(iocs.to_dict()))
        return iocs

    def _ips(self, text: str) -> List[str]:
        out = [ip for ip in (m.group(0) for m in IPV4_RE.finditer(text)) if is_public_ip(ip)]
        for token in _TOKEN_SPLIT_RE.split(text):
            token = token.strip(".,!?;")
            if ":" not in token:
                continue
            for candidate in (token, token.rstrip(":")):
                addr = parse_ip(candidate)
                if addr is None:
                    continue
                if addr.version == 6 and is_public_ip(candidate):
                    mapped = addr.ipv4_mapped
                    if mapped is None:
                        out.append(str(addr))
                    elif "." not in candidate:
                        # dotted forms are already matched by the IPv4 pattern
                        out.append(str(mapped))
                break
        return out

    def _domains(self, text: str) -> List[str]:
        out: List[str] = []
        for m in DOMAIN_RE.finditer(text):
            start, end = m.span()
            # host part or local part of an email address
            if (start > 0 and text[start - 1] == "@") or (end < len(text) and text[end] == "@"):
                continue
            domain = m.group(0).lower()
            if self.is_plausible_domain(domain) and not self.is_benign_domain(domain):
                out.append(domain)
        return out

    def _hashes(self, text: str) -> List[str]:
        out: List[str] = []
        for rx in HASH_RES.values():
            out.extend(m.group(0).lower() for m in rx.finditer(text))
        return out

    def is_plausible_domain(self, domain: str) -> bool:
        if len(domain) < self.min_domain_length or len(domain) > self.max_domain_length:
            return False
        tld = domain.rsplit(".", 1)[-1]
        if not tld.isalpha() or len(tld) < 2:
            return False
        return tld not in FILE_EXTENSIONS

    def is_benign_domain(self, domain: str) -> bool:
        d = domain.lower()
        return any(d == b or d.endswith("." + b) for b in self.benign_domains)


_default = IOCExtractor()


def extract(text: Optional[str]) -> IOCSet:
    return _default.extract(text)


def hashes_by_kind(iocs: IOCSet) -> Dict[HashKind, List[str]]:
    out: Dict[HashKind, List[str]] = {}
    for h in iocs.hashes:
        kind = hash_kind(h)
        if kind is not None:
            out.setdefault(kind, []).append(h)
    return out


def ioc_density(text: Optional[str], iocs: IOCSet) -> float:
    words = len((text or "").split())
    if words == 0:
        return 0.0
    return min(iocs.total() / words * 100, 100.0)


def match_keywords(text: Optional[str], keywords: Iterable[str]) -> List[str]:
    if not text:
        return []
    found = []
    for kw in keywords:
        kw = kw.strip()
        if kw and re.search(r"(?<!\w)" + re.escape(kw) + r"(?!\w)", text, re.IGNORECASE):
            found.append(kw)
    return found


__all__ = ["IOCExtractor", "IOCType", "extract", "hashes_by_kind", "ioc_density", "match_keywords"]
