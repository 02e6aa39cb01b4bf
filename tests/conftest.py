import pytest


def make_export(
    domain="corp.example.com",
    scores=None,
    rules=None,
    privileged_tag="PrivilegiedGroupScore",
    extra="",
):
    """Build a PingCastle-style health-check XML document."""
    scores = scores if scores is not None else {
        "GlobalScore": 75,
        "StaleObjectsScore": 10,
        "PrivilegedScore": 60,
        "TrustScore": 5,
        "AnomalyScore": 80,
    }
    parts = ["<HealthcheckData>"]
    if domain is not None:
        parts.append(f"<DomainFQDN>{domain}</DomainFQDN>")
    parts.append("<NetBIOSName>CORP</NetBIOSName>")
    parts.append("<DCName>DC01</DCName>")
    parts.append("<GenerationDate>2024-03-01T09:30:00.1234567+01:00</GenerationDate>")
    for tag, value in scores.items():
        if tag == "PrivilegedScore":
            tag = privileged_tag
        parts.append(f"<{tag}>{value}</{tag}>")
    parts.append("<RiskRules>")
    for rule in rules if rules is not None else DEFAULT_RULES:
        parts.append("<HealthcheckRiskRule>")
        for tag, value in rule.items():
            parts.append(f"<{tag}>{value}</{tag}>")
        parts.append("</HealthcheckRiskRule>")
    parts.append("</RiskRules>")
    parts.append(extra)
    parts.append("</HealthcheckData>")
    return "".join(parts)


DEFAULT_RULES = [
    {
        "Category": "StaleObjects",
        "RiskId": "S-PwdNeverExpires",
        "Model": "AccountTakeOver",
        "Points": "10",
        "Rationale": "12 accounts have a password that never expires",
        "Documentation": "Review service accounts",
    },
    {
        "Category": "PrivilegedAccounts",
        "RiskId": "P-Kerberoasting",
        "Model": "AccountTakeOver",
        "Points": "30",
        "Rationale": "Admin accounts have an SPN",
    },
    {
        "Category": "Anomalies",
        "RiskId": "A-LAPS-Not-Installed",
        "Model": "PasswordRetrieval",
        "Points": "15",
        "Rationale": "LAPS is not deployed",
    },
    {
        "Category": "PrivilegedAccounts",
        "RiskId": "P-AdminPwdTooOld",
        "Model": "AccountTakeOver",
        "Points": "30",
        "Rationale": "Admin password older than 3 years",
    },
]


@pytest.fixture
def export_file(tmp_path):
    def _write(name="ad_hc_corp.example.com.xml", **kwargs):
        path = tmp_path / name
        path.write_text(make_export(**kwargs), encoding="utf-8")
        return path

    return _write
