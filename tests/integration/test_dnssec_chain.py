import dataclasses

import dns.name
import pytest

from miniternet.errors import ChainVerificationError, ConfigurationError, DNSSECPublicationError, ErrorCode, ExitCode
from miniternet.zones.bootstrapper import DNSSECChainBootstrapper
from miniternet.zones.zone import ZoneKey, ZoneState

LEAF = "nlnetlabs.tk"
TLD = dns.name.from_text("tk.")
LEAF_NAME = dns.name.from_text("nlnetlabs.tk.")


async def start_chain(chain):
    for zone in (".", "tk", LEAF):
        await chain.start_zone(zone)
    return await chain.verify_chain()


@pytest.mark.asyncio
async def test_three_level_chain_verifies(chain, tmp_path):
    anchor_path = chain.export_trust_anchor(tmp_path / "root.key")

    results = await start_chain(chain)

    assert all(record.state is ZoneState.VERIFIED for record in chain.zones.values())
    assert set(results) == {"canary.nlnetlabs.tk./A", "canary.nlnetlabs.tk./AAAA"}
    answer = results["canary.nlnetlabs.tk./A"]
    assert answer.path == [dns.name.root, TLD, LEAF_NAME]
    assert answer.addresses == [chain.zone(LEAF).primary.addresses.ipv4]
    assert " DS " in anchor_path.read_text()


@pytest.mark.asyncio
async def test_leaf_key_rotation_reverifies_and_rejects_stale_signatures(chain):
    await start_chain(chain)
    leaf_server = chain.servers[LEAF_NAME]
    canary = dns.name.from_text("canary.nlnetlabs.tk.")
    stale_rrset = leaf_server.rrset(canary, "A")
    stale_sig = leaf_server.signature(canary, "A")
    old_tag = chain.zone(LEAF).key.key_tag

    new_key = await chain.rotate_keys(LEAF)

    assert new_key.key_tag != old_tag
    assert chain.state(LEAF) is ZoneState.DELEGATED
    await chain.verify_chain()
    assert chain.state(LEAF) is ZoneState.VERIFIED

    verifier = chain.verifier()
    with pytest.raises(ChainVerificationError):
        await verifier.check_signature(LEAF, stale_rrset, stale_sig)
    await verifier.check_signature(LEAF, leaf_server.rrset(canary, "A"), leaf_server.signature(canary, "A"))


@pytest.mark.asyncio
async def test_key_change_without_new_ds_breaks_the_chain(chain):
    await start_chain(chain)
    chain.servers[LEAF_NAME].set_key(ZoneKey.generate())

    with pytest.raises(ChainVerificationError) as excinfo:
        await chain.verify_chain()

    assert chain.state(LEAF) is ZoneState.FAILED
    assert excinfo.value.exit_code == ExitCode.DNSSEC_FAILED


@pytest.mark.asyncio
async def test_redelegation_is_idempotent(chain):
    await start_chain(chain)
    parent = chain.servers[TLD]
    serial, applied = parent.serial, parent.updates_applied

    assert await chain.delegate(LEAF) is False

    assert parent.serial == serial
    assert parent.updates_applied == applied
    assert chain.state(LEAF) is ZoneState.VERIFIED


@pytest.mark.asyncio
async def test_unacknowledged_delegation_exhausts_retries(testbed_config, allocator):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    config = dataclasses.replace(testbed_config.dns, ds_max_attempts=3, ds_backoff=0.5)
    chain = DNSSECChainBootstrapper(config, sleep=fake_sleep)
    chain.add_zone(".", allocator.allocate("root"))
    chain.add_zone("tk", allocator.allocate("master"), parent=".")
    chain.add_zone(LEAF, allocator.allocate("submaster"), parent="tk")
    await chain.start_zone(".")
    await chain.start_zone("tk")
    chain.servers[TLD].accept_updates = False

    with pytest.raises(DNSSECPublicationError) as excinfo:
        await chain.start_zone(LEAF)

    assert excinfo.value.details["attempts"] == 3
    assert excinfo.value.exit_code == ExitCode.DNSSEC_FAILED
    assert len(sleeps) == 2
    assert 0.5 <= sleeps[0] < sleeps[1]
    assert chain.state(LEAF) is ZoneState.FAILED
    with pytest.raises(DNSSECPublicationError) as waited:
        await chain.wait_for_state(LEAF, ZoneState.DELEGATED, timeout=1)
    assert waited.value.code is ErrorCode.DNSSEC_ZONE_NOT_READY

    # Once the parent accepts updates again the same key is delegated
    key_tag = chain.zone(LEAF).key.key_tag
    chain.servers[TLD].accept_updates = True
    await chain.start_zone(LEAF)
    assert chain.state(LEAF) is ZoneState.DELEGATED
    assert chain.zone(LEAF).key.key_tag == key_tag


@pytest.mark.asyncio
async def test_publish_order_is_enforced(chain):
    with pytest.raises(DNSSECPublicationError):
        await chain.publish("tk")
    chain.generate_keys("tk")
    with pytest.raises(DNSSECPublicationError):
        await chain.delegate("tk")
    await chain.publish("tk")
    with pytest.raises(DNSSECPublicationError) as excinfo:
        await chain.delegate("tk")
    assert excinfo.value.code is ErrorCode.DNSSEC_ZONE_NOT_READY
    assert chain.state("tk") is ZoneState.FAILED


@pytest.mark.asyncio
async def test_secondary_is_listed_only_after_sync(chain, allocator):
    chain.add_secondary("tk", allocator.allocate("master2"))
    ns2 = dns.name.from_text("ns2.tk.")
    await start_chain(chain)

    root_ns = chain.servers[dns.name.root].rrset(TLD, "NS")
    assert [rdata.target for rdata in root_ns] == [dns.name.from_text("ns1.tk.")]

    secondary = await chain.attach_secondary(ns2)

    assert secondary.sync_complete.is_set()
    assert secondary.serial == chain.servers[TLD].serial
    assert ns2 in {rdata.target for rdata in chain.servers[TLD].rrset(TLD, "NS")}
    assert ns2 in {rdata.target for rdata in chain.servers[dns.name.root].rrset(TLD, "NS")}
    await chain.verify_chain()

    await chain.register_host(LEAF, "late.nlnetlabs.tk", ipv4="172.16.238.99")
    await chain.rotate_keys("tk")
    assert secondary.serial == chain.servers[TLD].serial
    await chain.verify_chain()


@pytest.mark.asyncio
async def test_register_host(chain):
    with pytest.raises(DNSSECPublicationError):
        await chain.register_host(LEAF, "www.test.nlnetlabs.tk", ipv4="172.16.238.77")

    await start_chain(chain)
    await chain.register_host(LEAF, "www.test.nlnetlabs.tk", ipv4="172.16.238.77", ipv6="2001:3984:3989::77")

    a = await chain.resolve("www.test.nlnetlabs.tk", "A")
    aaaa = await chain.resolve("www.test.nlnetlabs.tk", "AAAA", family=6)
    assert a.addresses == ["172.16.238.77"]
    assert aaaa.addresses == ["2001:3984:3989::77"]

    await chain.register_host(LEAF, "www.test.nlnetlabs.tk", ipv4="172.16.238.78")
    assert (await chain.resolve("www.test.nlnetlabs.tk", "AAAA")).rrset is None

    with pytest.raises(ConfigurationError):
        await chain.register_host(LEAF, "www.example.org", ipv4="172.16.238.77")
    with pytest.raises(ConfigurationError):
        await chain.register_host(LEAF, "empty.nlnetlabs.tk")


def test_declaration_errors(chain, allocator):
    with pytest.raises(ConfigurationError):
        chain.add_zone("tk", allocator.allocate("again"), parent=".")
    with pytest.raises(ConfigurationError):
        chain.add_zone("example.org", allocator.allocate("org"), parent="tk")
    with pytest.raises(ConfigurationError):
        chain.add_zone("orphan.net", allocator.allocate("orphan"))
    with pytest.raises(ChainVerificationError):
        chain.trust_anchor()
