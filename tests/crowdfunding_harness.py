"""
Test-only Crowdfunding harness.

Adds privileged status and deadline overrides so tests can reach
round-gated states directly. Lives under tests/ so it never ends up in the
compiled build output.
"""

from algopy import arc4

from contracts.crowdfunding.contract import Crowdfunding


class CrowdfundingHarness(Crowdfunding):
    """Crowdfunding contract with test backdoors."""

    # The create method must be declared on the class itself to be callable
    # at creation time.
    @arc4.abimethod(create="require")
    def create(self, vote_window: arc4.UInt64) -> None:
        super().create(vote_window)

    @arc4.abimethod
    def set_status(self, status: arc4.UInt64) -> None:
        self.status.value = status.as_uint64()

    @arc4.abimethod
    def set_deadline_block_height(self, height: arc4.UInt64) -> None:
        self.deadline.value = height.as_uint64()
