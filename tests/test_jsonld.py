from conftest import jobposting_page
from vacancyfeed.core.jsonld import DetailFields, find_jobposting, parse_detail

POSTING = {
    "@context": "https://schema.org",
    "@type": "JobPosting",
    "title": "Orderpicker",
    "datePosted": "2024-03-18",
    "validThrough": "2024-04-30",
    "occupationalCategory": "Logistiek",
    "qualifications": {"educationalLevel": "MBO"},
    "hiringOrganization": {
        "@type": "Organization",
        "name": "Acme Logistics",
        "url": "https://www.acme.nl",
        "logo": {"@type": "ImageObject", "url": "https://www.acme.nl/logo.svg"},
    },
    "jobLocation": {
        "@type": "Place",
        "address": {
            "streetAddress": "Kanaalweg 12",
            "postalCode": "3526 KL",
            "addressLocality": "Utrecht",
            "addressRegion": "Utrecht",
        },
    },
    "baseSalary": {
        "@type": "MonetaryAmount",
        "value": {"minValue": 2800, "maxValue": 3400, "unitText": "MONTH"},
    },
}


def test_full_jobposting():
    fields = parse_detail(jobposting_page(POSTING))

    assert fields.ok
    assert fields.reason is None
    assert fields.date_posted == "2024-03-18"
    assert fields.valid_through == "2024-04-30"
    assert fields.work_field == "Logistiek"
    assert fields.education_level == "MBO"
    assert fields.street_address == "Kanaalweg 12"
    assert fields.postal_code == "3526 KL"
    assert fields.city == "Utrecht"
    assert fields.province == "Utrecht"
    assert fields.logo_url == "https://www.acme.nl/logo.svg"
    assert fields.company_website == "https://www.acme.nl"
    assert fields.structured_salary() == "€ 2.800 - € 3.400 per maand"


def test_jobposting_inside_array_and_graph():
    org = {"@type": "Organization", "name": "Acme"}
    as_array = jobposting_page([org, POSTING])
    as_graph = jobposting_page({"@context": "https://schema.org", "@graph": [org, POSTING]})

    assert parse_detail(as_array).city == "Utrecht"
    assert parse_detail(as_graph).city == "Utrecht"


def test_missing_and_malformed_blocks_are_tagged():
    assert parse_detail("").reason == "no_html"
    assert parse_detail("<html><body>niets</body></html>").reason == "no_jsonld"
    broken = '<script type="application/ld+json">{"@type": "JobPosting",</script>'
    assert parse_detail(broken).reason == "malformed"
    assert parse_detail(jobposting_page({"@type": "Organization"})).reason == "no_jobposting"


def test_default_result_is_all_none():
    fields = parse_detail("<html></html>")
    assert not fields.ok
    assert fields.status == "default"
    values = fields.to_dict()
    values.pop("status")
    values.pop("reason")
    assert set(values.values()) == {None}
    assert fields.structured_salary() is None


def test_organization_address_and_credential_fallbacks():
    posting = {
        "@type": ["JobPosting"],
        "educationRequirements": {"@type": "EducationalOccupationalCredential", "credentialCategory": "HBO"},
        "hiringOrganization": {
            "name": "Beta BV",
            "sameAs": ["https://beta.example.nl"],
            "address": {"addressLocality": "Amersfoort", "postalCode": "3811 AA"},
        },
        "baseSalary": {"value": {"value": 16.5, "unitText": "HOUR"}},
    }
    fields = parse_detail(jobposting_page(posting))

    assert fields.ok
    assert fields.education_level == "HBO"
    assert fields.city == "Amersfoort"
    assert fields.postal_code == "3811 AA"
    assert fields.province is None
    assert fields.company_website == "https://beta.example.nl"
    assert fields.structured_salary() == "€ 16,50 per uur"


def test_find_jobposting_reports_reason():
    obj, reason = find_jobposting(jobposting_page(POSTING))
    assert reason == ""
    assert obj["title"] == "Orderpicker"


def test_unparseable_dates_become_none():
    fields = parse_detail(jobposting_page({"@type": "JobPosting", "datePosted": "binnenkort"}))
    assert fields.ok
    assert fields.date_posted is None


def test_empty_constructor():
    fields = DetailFields.empty("fetch_failed")
    assert fields.status == "default"
    assert fields.reason == "fetch_failed"
