import pytest

from conftest import EXAMPLE_KEYWORDS, EXAMPLE_TEXT
from threatwatch.extract import IOCExtractor, extract, hashes_by_kind, ioc_density, match_keywords
from threatwatch.models import HashKind, IOCSet
from threatwatch.normalize import refang

MD5 = "d41d8cd98f00b204e9800998ecf8427e"
SHA1 = "da39a3ee5e6b4b0d3255bfef95601890afd80709"
SHA256 = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_example_text():
    iocs = extract(EXAMPLE_TEXT)
    assert iocs.to_dict() == {
        "ips": ["203.0.113.5"],
        "emails": ["breach@evil.com"],
        "hashes": [MD5],
    }


def test_empty_text_yields_empty_set():
    assert extract("").is_empty()
    assert extract(None).to_dict() == {}


@pytest.mark.parametrize(
    "ip",
    ["10.1.2.3", "172.16.0.1", "172.31.255.254", "192.168.1.1", "127.0.0.1", "::ffff:10.0.0.1", "::ffff:192.168.1.1", "::ffff:a00:1"],
)
def test_private_ips_excluded(ip):
    assert extract(f"beacon to {ip} observed").ips == []


def test_public_neighbours_of_private_ranges_kept():
    iocs = extract("hosts 172.32.0.1 and 11.0.0.1")
    assert iocs.ips == ["172.32.0.1", "11.0.0.1"]


def test_ipv6_public_kept_and_link_local_dropped():
    iocs = extract("talks to 2001:db8:85a3::8a2e:370:7334, and fe80::1")
    assert iocs.ips == ["2001:db8:85a3::8a2e:370:7334"]


def test_ipv4_mapped_addresses_reported_once_in_dotted_form():
    iocs = extract("relay ::ffff:8.8.8.8 then ::ffff:808:404")
    assert iocs.ips == ["8.8.8.8", "8.8.4.4"]


def test_hashes_bucketed_strictly_by_length():
    iocs = extract(f"{MD5} {SHA1} {SHA256.upper()}")
    assert hashes_by_kind(iocs) == {
        HashKind.MD5: [MD5],
        HashKind.SHA1: [SHA1],
        HashKind.SHA256: [SHA256],
    }


def test_sha256_never_reported_as_shorter_hash():
    iocs = extract(f"payload {SHA256}")
    assert iocs.hashes == [SHA256]


def test_extract_is_idempotent_on_refanged_text():
    text = "see hxxps://drop[.]bad-site[.]ru/x and 185[.]220[.]101[.]4, mail ops[@]bad-site[.]ru"
    assert extract(refang(text)) == extract(text)


def test_defanged_url_and_domain():
    iocs = extract("grab hxxp://update-sync[.]xyz/payload.exe.")
    assert iocs.urls == ["http://update-sync.xyz/payload.exe"]
    assert "update-sync.xyz" in iocs.domains
    assert "payload.exe" not in iocs.domains


def test_benign_domains_filtered():
    iocs = extract("mirror on github.com and docs.google.com, real one at evil-cdn.net")
    assert iocs.domains == ["evil-cdn.net"]


def test_custom_allow_list():
    extractor = IOCExtractor(benign_domains=["evil-cdn.net"])
    assert extractor.extract("evil-cdn.net").domains == []


def test_email_host_not_reported_as_domain():
    iocs = extract("contact admin@corp-leaks.com")
    assert iocs.emails == ["admin@corp-leaks.com"]
    assert iocs.domains == []


def test_cve_crypto_and_windows_artifacts():
    text = (
        "exploits cve-2024-3400, pay 0x52908400098527886E0F7030069857D2E4169EE7 "
        "drops C:\\Users\\Public\\svc.exe and sets HKLM\\Software\\Microsoft\\Windows\\CurrentVersion\\Run"
    )
    iocs = extract(text)
    assert iocs.cves == ["CVE-2024-3400"]
    assert iocs.crypto_addresses == ["0x52908400098527886E0F7030069857D2E4169EE7"]
    assert "C:\\Users\\Public\\svc.exe" in iocs.windows_artifacts
    assert any(a.startswith("HKLM\\Software") for a in iocs.windows_artifacts)


def test_duplicates_collapsed():
    iocs = extract("8.8.4.4 8.8.4.4 8[.]8[.]4[.]4")
    assert iocs.ips == ["8.8.4.4"]


def test_ioc_density():
    iocs = extract(EXAMPLE_TEXT)
    words = len(EXAMPLE_TEXT.split())
    assert ioc_density(EXAMPLE_TEXT, iocs) == pytest.approx(3 / words * 100)
    assert ioc_density("", IOCSet()) == 0.0
    assert ioc_density("1.2.3.4", IOCSet(ips=["1.2.3.4", "5.6.7.8"])) == 100.0


def test_match_keywords_whole_words_only():
    assert match_keywords(EXAMPLE_TEXT, EXAMPLE_KEYWORDS) == EXAMPLE_KEYWORDS
    assert match_keywords("dumpster fire", ["dump"]) == []
    assert match_keywords("Credential Dump posted", ["credential dump"]) == ["credential dump"]
    assert match_keywords(None, ["dump"]) == []
