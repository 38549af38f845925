import json
from urllib.parse import parse_qs

import httpx
import pytest

from threatwatch.enrichment import EnrichmentOrchestrator
from threatwatch.intel import (
    AbuseIPDBProvider,
    GreyNoiseProvider,
    OTXProvider,
    PhishTankProvider,
    PulsediveProvider,
    ShodanProvider,
    ThreatFoxProvider,
    URLhausProvider,
    VirusTotalProvider,
)
from threatwatch.intel.virustotal import url_id
from threatwatch.models import EntityType, ProviderStatus


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_virustotal_ip_lookup():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-apikey")
        return httpx.Response(
            200,
            json={
                "data": {
                    "attributes": {
                        "last_analysis_stats": {"malicious": 6, "suspicious": 1, "harmless": 60, "undetected": 10},
                        "reputation": -12,
                        "country": "NL",
                        "asn": 60729,
                        "as_owner": "DigitalOcean, LLC",
                    }
                }
            },
        )

    async with _client(handler) as client:
        vt = VirusTotalProvider(api_key="k", client=client)
        payload = await vt.lookup(EntityType.IP, "185.220.101.4")

    assert seen == {"url": "https://www.virustotal.com/api/v3/ip_addresses/185.220.101.4", "key": "k"}
    assert payload["malicious"] == 6
    assert payload["as_owner"] == "DigitalOcean, LLC"
    assert vt.verdict(payload) == "malicious"
    assert vt.hints(payload) == {"malicious", "cloud_provider"}


def test_virustotal_url_id_has_no_padding():
    assert url_id("http://a.io") == "aHR0cDovL2EuaW8"


@pytest.mark.asyncio
async def test_virustotal_not_found_is_no_data():
    async with _client(lambda r: httpx.Response(404, json={"error": {"code": "NotFoundError"}})) as client:
        vt = VirusTotalProvider(api_key="k", client=client)
        assert await vt.lookup(EntityType.HASH, "a" * 64) is None


@pytest.mark.asyncio
async def test_server_error_propagates():
    async with _client(lambda r: httpx.Response(500)) as client:
        vt = VirusTotalProvider(api_key="k", client=client)
        with pytest.raises(httpx.HTTPStatusError):
            await vt.lookup(EntityType.DOMAIN, "evil-cdn.net")


@pytest.mark.asyncio
async def test_missing_key_disables_provider():
    def handler(request):
        raise AssertionError("no request expected")

    async with _client(handler) as client:
        vt = VirusTotalProvider(api_key="", client=client)
        assert vt.enabled() is False
        assert await vt.lookup(EntityType.IP, "8.8.8.8") is None


@pytest.mark.asyncio
async def test_unsupported_type_not_queried():
    def handler(request):
        raise AssertionError("no request expected")

    async with _client(handler) as client:
        abuse = AbuseIPDBProvider(api_key="k", client=client)
        assert await abuse.lookup(EntityType.HASH, "a" * 32) is None


@pytest.mark.asyncio
async def test_abuseipdb_check():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v2/check"
        assert request.url.params["ipAddress"] == "203.0.113.5"
        assert request.url.params["maxAgeInDays"] == "90"
        assert request.headers["Key"] == "k"
        return httpx.Response(
            200,
            json={
                "data": {
                    "abuseConfidenceScore": 88,
                    "usageType": "Data Center/Web Hosting/Transit",
                    "isp": "Example Hosting",
                    "countryCode": "DE",
                    "isWhitelisted": False,
                    "isTor": True,
                    "totalReports": 41,
                    "lastReportedAt": "2026-10-16T11:00:00+00:00",
                }
            },
        )

    async with _client(handler) as client:
        abuse = AbuseIPDBProvider(api_key="k", client=client)
        payload = await abuse.lookup(EntityType.IP, "203.0.113.5")

    assert payload["abuse_confidence_score"] == 88
    assert payload["is_tor"] is True
    assert abuse.verdict(payload) == "malicious"
    assert abuse.hints(payload) == {"malicious", "tor_exit_node", "cloud_provider"}


def test_abuseipdb_whitelisted_is_benign():
    abuse = AbuseIPDBProvider(api_key="k")
    assert abuse.verdict({"abuse_confidence_score": 90, "is_whitelisted": True}) == "benign"
    assert abuse.verdict({"abuse_confidence_score": 30}) == "suspicious"


@pytest.mark.asyncio
async def test_greynoise_keyless_and_unknown_ip():
    async with _client(lambda r: httpx.Response(404, json={"message": "IP not observed"})) as client:
        gn = GreyNoiseProvider(api_key="", client=client)
        assert gn.enabled() is True
        assert await gn.lookup(EntityType.IP, "198.51.100.7") is None


def test_greynoise_verdicts():
    gn = GreyNoiseProvider(api_key="")
    assert gn.verdict({"classification": "malicious"}) == "malicious"
    assert gn.verdict({"classification": "unknown", "riot": True}) == "benign"
    assert gn.verdict({"classification": "unknown", "noise": True}) == "suspicious"
    assert "tor_exit_node" in gn.hints({"name": "Tor exit node", "classification": "unknown"})


@pytest.mark.asyncio
async def test_urlhaus_url_lookup():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/url/"
        assert parse_qs(request.content.decode()) == {"url": ["http://update-sync.xyz/payload.exe"]}
        return httpx.Response(
            200,
            json={
                "query_status": "ok",
                "url_status": "online",
                "threat": "malware_download",
                "tags": ["exe"],
                "payloads": [{"signature": "AgentTesla"}, {"signature": None}],
            },
        )

    async with _client(handler) as client:
        uh = URLhausProvider(api_key="", client=client)
        payload = await uh.lookup(EntityType.URL, "http://update-sync.xyz/payload.exe")

    assert payload["url_status"] == "online"
    assert payload["malware_families"] == ["AgentTesla"]
    assert uh.verdict(payload) == "malicious"


@pytest.mark.asyncio
async def test_urlhaus_no_results_and_sha1_skip():
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(200, json={"query_status": "no_results"})

    async with _client(handler) as client:
        uh = URLhausProvider(api_key="", client=client)
        assert await uh.lookup(EntityType.DOMAIN, "evil-cdn.net") is None
        assert await uh.lookup(EntityType.HASH, "da39a3ee5e6b4b0d3255bfef95601890afd80709") is None

    assert calls == ["/v1/host/"]


@pytest.mark.asyncio
async def test_threatfox_search():
    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content) == {"query": "search_ioc", "search_term": "evil-cdn.net"}
        return httpx.Response(
            200,
            json={
                "query_status": "ok",
                "data": [
                    {"threat_type": "botnet_cc", "malware_printable": "Cobalt Strike", "confidence_level": 80},
                    {"threat_type": "botnet_cc", "malware_printable": "Cobalt Strike", "confidence_level": 50},
                ],
            },
        )

    async with _client(handler) as client:
        tf = ThreatFoxProvider(api_key="", client=client)
        payload = await tf.lookup(EntityType.DOMAIN, "evil-cdn.net")

    assert payload["malware"] == "Cobalt Strike"
    assert payload["matches"] == 2
    assert tf.verdict(payload) == "malicious"


@pytest.mark.asyncio
async def test_phishtank_check():
    def handler(request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        assert form["format"] == ["json"]
        assert form["app_key"] == ["k"]
        return httpx.Response(
            200, json={"results": {"in_database": True, "phish_id": 77, "verified": True, "valid": True}}
        )

    async with _client(handler) as client:
        pt = PhishTankProvider(api_key="k", client=client)
        payload = await pt.lookup(EntityType.URL, "http://secure-login-paypal.top/verify")

    assert payload["phish_id"] == 77
    assert pt.verdict(payload) == "malicious"


@pytest.mark.asyncio
async def test_otx_general_endpoint():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/v1/indicators/IPv4/203.0.113.5/general"
        return httpx.Response(
            200,
            json={
                "pulse_info": {"count": 3, "pulses": [{"malware_families": ["Emotet"]}, {"malware_families": []}]},
                "reputation": 0,
                "country_code": "US",
            },
        )

    async with _client(handler) as client:
        otx = OTXProvider(api_key="k", client=client)
        payload = await otx.lookup(EntityType.IP, "203.0.113.5")

    assert payload["pulse_count"] == 3
    assert payload["malware_families"] == ["Emotet"]
    assert otx.verdict(payload) == "suspicious"


@pytest.mark.asyncio
async def test_upstream_429_recorded_as_rate_limited():
    async with _client(lambda r: httpx.Response(429)) as client:
        vt = VirusTotalProvider(api_key="k", client=client)
        orchestrator = EnrichmentOrchestrator([vt], retry_attempts=1, retry_delay_seconds=0)
        record = await orchestrator.enrich(EntityType.IP, "203.0.113.5")

    assert record.outcomes == {"virustotal": ProviderStatus.RATE_LIMITED}
    assert record.payloads == {}


@pytest.mark.asyncio
async def test_transport_timeout_recorded_as_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as client:
        vt = VirusTotalProvider(api_key="k", client=client)
        orchestrator = EnrichmentOrchestrator([vt], retry_attempts=2, retry_delay_seconds=0)
        record = await orchestrator.enrich(EntityType.IP, "203.0.113.5")

    assert record.outcomes == {"virustotal": ProviderStatus.TIMEOUT}


@pytest.mark.asyncio
async def test_shodan_host_lookup():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/shodan/host/185.220.101.4"
        assert request.url.params["key"] == "k"
        return httpx.Response(
            200,
            json={
                "org": "Tor Exit",
                "country_code": "DE",
                "tags": ["tor"],
                "data": [
                    {"port": 443, "product": "nginx", "vulns": {"CVE-2021-23017": {}}},
                    {"port": 22, "product": "OpenSSH"},
                    {"port": 443, "product": "nginx"},
                ],
            },
        )

    async with _client(handler) as client:
        shodan = ShodanProvider(api_key="k", client=client)
        payload = await shodan.lookup(EntityType.IP, "185.220.101.4")
        assert await shodan.lookup(EntityType.DOMAIN, "evil.com") is None

    assert payload["ports"] == [22, 443]
    assert payload["services"] == ["nginx", "OpenSSH"]
    assert payload["vulns"] == ["CVE-2021-23017"]
    assert shodan.verdict(payload) == "suspicious"
    assert shodan.hints(payload) == {"suspicious", "tor_exit_node"}


@pytest.mark.asyncio
async def test_pulsedive_risk_verdicts():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params["indicator"] == "unknown.example":
            return httpx.Response(404, json={"error": "Indicator not found."})
        return httpx.Response(
            200,
            json={
                "risk": "high",
                "risk_recommended": "high",
                "threats": [{"name": "Emotet"}],
                "feeds": [{"name": "Feodo Tracker"}],
                "riskfactors": [{"name": "found in threat feeds"}],
            },
        )

    async with _client(handler) as client:
        pulsedive = PulsediveProvider(api_key="k", client=client)
        payload = await pulsedive.lookup(EntityType.DOMAIN, "update-sync.xyz")
        missing = await pulsedive.lookup(EntityType.DOMAIN, "unknown.example")

    assert payload["threats"] == ["Emotet"]
    assert payload["threat_count"] == 1
    assert pulsedive.verdict(payload) == "malicious"
    assert pulsedive.verdict({"risk": "none"}) == "benign"
    assert missing is None
    assert not PulsediveProvider(api_key="").enabled()
