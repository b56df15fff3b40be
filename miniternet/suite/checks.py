"""
miniternet/suite/checks.py
The built-in integration cases.

    home           application home page renders
    dnssec-chain   canary.<leaf> validates through the chain, and the
                   application reports the leaf as signed
    site-<name>    one per TLS fixture: the application's site report for
                   the fixture shows what the fixture profile expects
"""

import logging
from typing import Iterable, Optional

import dns.name

from miniternet.errors import CheckFailed, ChainVerificationError
from miniternet.suite.cases import CaseContext, CaseRegistry, Expectation, OutcomeContract, TestCase
from miniternet.tls.matrix import TargetFixture
from miniternet.tls.profiles import FixtureProfile

logger = logging.getLogger(__name__)


async def check_home(ctx: CaseContext) -> None:
    """Home page renders with a title."""
    await ctx.session.get(ctx.app_url)
    title = await ctx.session.title()
    if not title.strip():
        raise CheckFailed(f"{ctx.app_url} rendered without a title")
    if ctx.case.contract:
        await ctx.case.contract.verify(ctx.session, ctx.app_url)


async def check_contract(ctx: CaseContext) -> None:
    if ctx.case.contract is None:
        raise CheckFailed(f"{ctx.case.case_id} has no outcome contract")
    await ctx.case.contract.verify(ctx.session, ctx.app_url)


def make_dnssec_case(leaf_zone: str, canary_label: str = "canary") -> TestCase:
    contract = OutcomeContract(
        path=f"/domain/{leaf_zone}/",
        expectations=[Expectation(selector="#dnssec", contains="secure")],
    )

    async def check_dnssec(ctx: CaseContext) -> None:
        if ctx.chain is not None:
            canary = dns.name.from_text(f"{canary_label}.{leaf_zone}")
            try:
                answer = await ctx.chain.resolve(canary, "A")
            except ChainVerificationError as e:
                raise CheckFailed(f"{canary} does not validate: {e.message}") from e
            if not answer.addresses:
                raise CheckFailed(f"{canary} validated but has no A record")
        await contract.verify(ctx.session, ctx.app_url)

    return TestCase("dnssec-chain", check_dnssec, tags=["dnssec"], contract=contract,
                    description=f"{leaf_zone} validates and is reported as signed")


def site_contract(profile: FixtureProfile, hostname: str) -> OutcomeContract:
    return OutcomeContract(
        path=f"/site/{hostname}/",
        expectations=[Expectation(selector=css, contains=text) for css, text in profile.expect.items()],
    )


def make_site_case(fixture: TargetFixture) -> TestCase:
    profile = fixture.profile
    return TestCase(
        f"site-{profile.name}",
        check_contract,
        tags=["site"] + profile.all_tags,
        contract=site_contract(profile, fixture.hostname),
        fixture=profile.name,
        description=profile.description,
    )


def build_registry(
    fixtures: Iterable[TargetFixture],
    leaf_zone: Optional[str] = None,
    canary_label: str = "canary",
) -> CaseRegistry:
    """Registry in dispatch order: home, dnssec-chain, then one case per fixture."""
    registry = CaseRegistry()
    registry.register(TestCase("home", check_home, tags=["smoke"], description="home page renders"))
    if leaf_zone:
        registry.register(make_dnssec_case(leaf_zone, canary_label))
    for fixture in fixtures:
        registry.register(make_site_case(fixture))
    logger.debug(f"[Suite] {len(registry)} case(s) declared")
    return registry
