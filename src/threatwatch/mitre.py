"""
MITRE ATT&CK tagging for findings.

Three lookup tables drive the mapping: watch keyword -> techniques, IOC
type -> techniques and source substring -> techniques. The defaults below
can be extended or overridden from a YAML file with the same three
sections; the tables are read once and never mutated afterwards.
"""
from __future__ import annotations

import logging
import re
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from threatwatch.config import load_yaml
from threatwatch.errors import ConfigError
from threatwatch.models import Finding, IOCType, MitreTechnique

log = logging.getLogger(__name__)

Table = Mapping[str, Tuple[MitreTechnique, ...]]


def _t(id: str, name: str, tactic: str) -> MitreTechnique:
    return MitreTechnique(id=id, name=name, tactic=tactic)


DEFAULT_KEYWORD_MAPPINGS: Dict[str, Tuple[MitreTechnique, ...]] = {
    "phishing": (_t("T1566", "Phishing", "initial-access"),),
    "spearphishing": (_t("T1566", "Phishing", "initial-access"),),
    "credential dump": (_t("T1003", "OS Credential Dumping", "credential-access"),),
    "lsass": (_t("T1003", "OS Credential Dumping", "credential-access"),),
    "mimikatz": (_t("T1003.001", "LSASS Memory", "credential-access"),),
    "credential": (_t("T1078", "Valid Accounts", "initial-access"),),
    "password": (_t("T1078", "Valid Accounts", "initial-access"),),
    "brute force": (_t("T1110", "Brute Force", "credential-access"),),
    "password spray": (_t("T1110", "Brute Force", "credential-access"),),
    "ransomware": (
        _t("T1486", "Data Encrypted for Impact", "impact"),
        _t("T1490", "Inhibit System Recovery", "impact"),
    ),
    "backdoor": (_t("T1547", "Boot or Logon Autostart Execution", "persistence"),),
    "c2": (_t("T1071", "Application Layer Protocol", "command-and-control"),),
    "command and control": (_t("T1071", "Application Layer Protocol", "command-and-control"),),
    "beacon": (_t("T1071", "Application Layer Protocol", "command-and-control"),),
    "exfiltration": (_t("T1041", "Exfiltration Over C2 Channel", "exfiltration"),),
    "data leak": (_t("T1048", "Exfiltration Over Alternative Protocol", "exfiltration"),),
    "stolen data": (_t("T1048", "Exfiltration Over Alternative Protocol", "exfiltration"),),
    "lateral movement": (_t("T1021", "Remote Services", "lateral-movement"),),
    "privilege escalation": (_t("T1068", "Exploitation for Privilege Escalation", "privilege-escalation"),),
    "exploit": (_t("T1203", "Exploitation for Client Execution", "execution"),),
    "rce": (_t("T1190", "Exploit Public-Facing Application", "initial-access"),),
    "sql injection": (_t("T1190", "Exploit Public-Facing Application", "initial-access"),),
    "powershell": (_t("T1059.001", "PowerShell", "execution"),),
    "keylogger": (_t("T1056.001", "Keylogging", "collection"),),
    "rootkit": (_t("T1014", "Rootkit", "defense-evasion"),),
    "ddos": (_t("T1498", "Network Denial of Service", "impact"),),
    "rdp": (_t("T1133", "External Remote Services", "persistence"),),
    "remote access": (_t("T1133", "External Remote Services", "persistence"),),
}

DEFAULT_IOC_MAPPINGS: Dict[IOCType, Tuple[MitreTechnique, ...]] = {
    IOCType.EMAIL: (_t("T1078", "Valid Accounts", "initial-access"),),
    IOCType.HASH: (_t("T1204", "User Execution", "execution"),),
    IOCType.CVE: (_t("T1190", "Exploit Public-Facing Application", "initial-access"),),
    IOCType.WINDOWS_ARTIFACT: (_t("T1112", "Modify Registry", "defense-evasion"),),
}

DEFAULT_SOURCE_MAPPINGS: Dict[str, Tuple[MitreTechnique, ...]] = {
    "pastebin": (_t("T1567", "Exfiltration Over Web Service", "exfiltration"),),
    "github secret scanning": (_t("T1552.001", "Credentials In Files", "credential-access"),),
}

KILL_CHAIN: Mapping[str, int] = MappingProxyType(
    {
        "reconnaissance": 1,
        "resource-development": 2,
        "initial-access": 3,
        "execution": 4,
        "persistence": 5,
        "privilege-escalation": 6,
        "defense-evasion": 7,
        "credential-access": 8,
        "discovery": 9,
        "lateral-movement": 10,
        "collection": 11,
        "command-and-control": 12,
        "exfiltration": 13,
        "impact": 14,
    }
)


def _parse_section(raw: Any, section: str) -> Dict[str, Tuple[MitreTechnique, ...]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"mitre mapping section {section!r} must be a mapping")
    out: Dict[str, Tuple[MitreTechnique, ...]] = {}
    for key, techs in raw.items():
        try:
            out[str(key).lower()] = tuple(MitreTechnique.model_validate(t) for t in techs or [])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"invalid mitre mapping {section}.{key}: {e}") from e
    return out


class MitreMapper:
    def __init__(
        self,
        keyword_mappings: Optional[Mapping[str, Tuple[MitreTechnique, ...]]] = None,
        ioc_mappings: Optional[Mapping[IOCType, Tuple[MitreTechnique, ...]]] = None,
        source_mappings: Optional[Mapping[str, Tuple[MitreTechnique, ...]]] = None,
    ) -> None:
        self.keyword_mappings: Table = MappingProxyType(
            {k.lower(): tuple(v) for k, v in (keyword_mappings or DEFAULT_KEYWORD_MAPPINGS).items()}
        )
        self.ioc_mappings: Mapping[IOCType, Tuple[MitreTechnique, ...]] = MappingProxyType(
            dict(ioc_mappings or DEFAULT_IOC_MAPPINGS)
        )
        self.source_mappings: Table = MappingProxyType(
            {k.lower(): tuple(v) for k, v in (source_mappings or DEFAULT_SOURCE_MAPPINGS).items()}
        )
        self._keyword_res = {
            k: re.compile(r"(?<!\w)" + re.escape(k) + r"(?!\w)", re.IGNORECASE) for k in self.keyword_mappings
        }

    @classmethod
    def from_file(cls, path: Optional[str]) -> "MitreMapper":
        """Defaults merged with the YAML file's entries; file entries win per key."""
        if not path:
            return cls()
        data = load_yaml(path)
        keywords = dict(DEFAULT_KEYWORD_MAPPINGS)
        keywords.update(_parse_section(data.get("keyword_mappings"), "keyword_mappings"))
        sources = dict(DEFAULT_SOURCE_MAPPINGS)
        sources.update(_parse_section(data.get("source_mappings"), "source_mappings"))
        iocs = dict(DEFAULT_IOC_MAPPINGS)
        for key, techs in _parse_section(data.get("ioc_mappings"), "ioc_mappings").items():
            try:
                iocs[IOCType.from_plural(key)] = techs
            except ValueError as e:
                raise ConfigError(str(e)) from e
        log.info("mitre_mappings_loaded path=%s keywords=%d sources=%d", path, len(keywords), len(sources))
        return cls(keywords, iocs, sources)

    def map_finding(self, finding: Finding) -> List[MitreTechnique]:
        seen: Dict[str, MitreTechnique] = {}

        def add(techs: Iterable[MitreTechnique]) -> None:
            for t in techs:
                seen.setdefault(t.id, t)

        keywords = [k.lower() for k in finding.keywords]
        text = finding.text
        for pattern, techs in self.keyword_mappings.items():
            if any(pattern in k for k in keywords) or self._keyword_res[pattern].search(text):
                add(techs)

        for ioc_type, _values in finding.iocs.non_empty():
            add(self.ioc_mappings.get(ioc_type, ()))

        source = finding.source.lower()
        for pattern, techs in self.source_mappings.items():
            if pattern in source:
                add(techs)

        return list(seen.values())

    def map_findings(self, findings: Iterable[Finding]) -> List[MitreTechnique]:
        seen: Dict[str, MitreTechnique] = {}
        for f in findings:
            for t in self.map_finding(f):
                seen.setdefault(t.id, t)
        return list(seen.values())

    @staticmethod
    def tactics(techniques: Iterable[MitreTechnique]) -> List[str]:
        return list(dict.fromkeys(t.tactic for t in techniques))

    @staticmethod
    def kill_chain_phase(tactic: str) -> int:
        return KILL_CHAIN.get(tactic, 0)

    def narrative(self, techniques: Iterable[MitreTechnique]) -> str:
        techs = sorted(techniques, key=lambda t: self.kill_chain_phase(t.tactic))
        if not techs:
            return "No MITRE ATT&CK techniques identified for this finding."
        lines = ["Attack Analysis:", ""]
        lines.extend(f"- {t.name} ({t.id}) - {t.tactic}" for t in techs)
        return "\n".join(lines)
