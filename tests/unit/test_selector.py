import pytest

from miniternet.suite.selector import CaseSelector


@pytest.mark.parametrize("expression,case_id,tags,expected", [
    ("", "anything", [], True),
    ("tls13*", "tls13only", [], True),
    ("tls13*", "tls12only", [], False),
    ("tls13*,-*ocsp*", "tls13onlyocsp", [], False),
    ("tls13*,-*ocsp*", "tls13only", [], True),
    ("tag:dnssec", "dnssec-chain", ["dnssec"], True),
    ("tag:dnssec", "site-tls12only", ["site", "tls12"], False),
    ("-tag:slow", "home", ["smoke"], True),
    ("-tag:slow", "big", ["slow"], False),
    ("TLS13*", "tls13only", [], True),
    ("home site-*", "site-x", [], True),
])
def test_matching(expression, case_id, tags, expected):
    assert CaseSelector.parse(expression).matches(case_id, tags) is expected


@pytest.mark.parametrize("expression", ["tag:", "-", "foo$", "a[b"])
def test_malformed_expressions(expression):
    with pytest.raises(ValueError):
        CaseSelector.parse(expression)


def test_truthiness_and_equality():
    assert not CaseSelector.parse("")
    assert CaseSelector.parse("a, b")
    assert CaseSelector.parse("a,b") == CaseSelector.parse("a b")
