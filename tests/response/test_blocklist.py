"""
Tests for BlockList.
"""

from src.response.blocklist import BlockList, Claim


class TestBlockList:
    """Tests for BlockList class."""

    def test_claim_then_release_blocked(self, clock):
        blocklist = BlockList(clock)

        claim, event = blocklist.claim("203.0.113.7")
        assert claim is Claim.CLAIMED
        assert not event.is_set()

        blocklist.release("203.0.113.7", blocked=True)

        assert event.is_set()
        assert "203.0.113.7" in blocklist
        assert blocklist.blocked_at("203.0.113.7") == clock()
        assert blocklist.claim("203.0.113.7") == (Claim.BLOCKED, None)

    def test_second_claim_is_in_flight(self):
        blocklist = BlockList()
        _, first = blocklist.claim("203.0.113.7")

        claim, event = blocklist.claim("203.0.113.7")

        assert claim is Claim.IN_FLIGHT
        assert event is first

    def test_failed_release_allows_new_claim(self):
        blocklist = BlockList()
        blocklist.claim("203.0.113.7")

        blocklist.release("203.0.113.7", blocked=False)

        assert "203.0.113.7" not in blocklist
        assert blocklist.claim("203.0.113.7")[0] is Claim.CLAIMED

    def test_add_remove(self, clock):
        blocklist = BlockList(clock)
        blocklist.add("198.51.100.1")

        assert len(blocklist) == 1
        assert blocklist.items() == {"198.51.100.1": clock()}
        assert blocklist.remove("198.51.100.1")
        assert not blocklist.remove("198.51.100.1")
