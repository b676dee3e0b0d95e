"""
Milestone Crowdfunding Smart Contract

A single-campaign crowdfunding contract. Pledges are held in escrow by the
application account and released to the campaign owner one milestone at a
time, each release gated behind a donation-weighted vote of the donors.
If the goal is missed or the donors withdraw their confidence, donors claim
back their share of whatever is still held in escrow.

Features:
- One-shot campaign creation with goal, duration and number of milestones
- Donations tracked per donor (voting weight and refund basis)
- Milestone posting opens a donor vote bounded by a block-height window
- Donation-weighted majority voting (more than half of all funds raised)
- Equal per-milestone payouts to the owner
- Proportional refunds that do not depend on the order of claims
- Box storage paid for by the caller that creates it, never from pledges

Algorand Primitives Used:
- AVM Application (smart contract)
- Escrow pattern (application account holds the pledges)
- Grouped payment transactions (donations and storage deposits)
- Inner Transactions (milestone payouts and refunds)
- Boxes (donations, milestones, payouts, vote tallies, voters)
- Block round as the campaign clock
"""

from algopy import (
    ARC4Contract,
    Account,
    BoxMap,
    Bytes,
    Global,
    GlobalState,
    Txn,
    UInt64,
    arc4,
    gtxn,
    itxn,
    op,
    subroutine,
)


# Campaign status constants
STATUS_PENDING = UInt64(0)
STATUS_ACTIVE = UInt64(1)
STATUS_FUNDED = UInt64(2)
STATUS_EXPIRED = UInt64(3)
STATUS_VOTE = UInt64(4)
STATUS_CANCELED = UInt64(5)
STATUS_COMPLETED = UInt64(6)

# Milestone details are capped at 100 bytes
MAX_DETAILS_LENGTH = 100

# Box minimum balance: 2500 per box plus 400 per byte of name and value
BOX_FLAT_MIN_BALANCE = 2_500
BOX_BYTE_MIN_BALANCE = 400
MILESTONE_KEY_LENGTH = 13  # mile_ + itob(index)

# Storage deposits, paid by the caller that creates the boxes
DONATION_BOX_COST = 20_100  # don_ + address (36) -> uint64
VOTER_BOX_COST = 24_100  # voter_ + itob(vote_round) + address (46) -> uint64
TALLY_BOXES_COST = 20_600  # yes_ + itob(index) and no_ + itob(index) -> uint64
PAYOUT_BOX_COST = 10_900  # paid_ + itob(index) (13) -> uint64

# Rejection reasons
ERR_NOT_OWNER = "ERR_NOT_OWNER"
ERR_ALREADY_CREATED = "ERR_ALREADY_CREATED"
ERR_ZERO_TARGET_GOAL = "ERR_ZERO_TARGET_GOAL"
ERR_ZERO_DURATION = "ERR_ZERO_DURATION"
ERR_ZERO_MILESTONES = "ERR_ZERO_MILESTONES"
ERR_ZERO_DONATION = "ERR_ZERO_DONATION"
ERR_NOT_ACTIVE = "ERR_NOT_ACTIVE"
ERR_NOT_ENOUGH_FUNDS = "ERR_NOT_ENOUGH_FUNDS"
ERR_FROZEN_FUNDS = "ERR_FROZEN_FUNDS"
ERR_NO_REFUND = "ERR_NO_REFUND"
ERR_OUT_OF_BOUNDS = "ERR_OUT_OF_BOUNDS"
ERR_MILESTONE_NOT_FOUND = "ERR_MILESTONE_NOT_FOUND"
ERR_EMPTY_DETAILS = "ERR_EMPTY_DETAILS"
ERR_INVALID_STATUS = "ERR_INVALID_STATUS"
ERR_NO_DONATION = "ERR_NO_DONATION"
ERR_ALREADY_VOTED = "ERR_ALREADY_VOTED"
ERR_ALREADY_CLAIMED = "ERR_ALREADY_CLAIMED"
ERR_DETAILS_TOO_LONG = "ERR_DETAILS_TOO_LONG"
ERR_INVALID_PAYMENT = "ERR_INVALID_PAYMENT"
ERR_ZERO_VOTE_WINDOW = "ERR_ZERO_VOTE_WINDOW"
ERR_STORAGE_DEPOSIT = "ERR_STORAGE_DEPOSIT"


class Crowdfunding(ARC4Contract):
    """
    Milestone-gated crowdfunding campaign.

    State Schema:
    - Global State:
        - owner: Campaign owner (the account that created the app)
        - status: Campaign status register
        - funding_goal: Amount that must be raised, in microALGOs
        - deadline: Round at which an unfunded campaign expires
        - vote_end: Round at which the current milestone vote closes
        - vote_window: Length of a milestone vote, in rounds
        - milestone_count: Number of milestones declared at creation
        - claimed_count: Number of milestones paid out
        - total_raised: Sum of all donations
        - total_claimed: Sum of all milestone payouts
        - total_refunded: Sum of all refunds
        - vote_round: Incremented on every milestone posting
        - voting_milestone: Index of the milestone last put to a vote

    - Boxes:
        - don_{address}: Cumulative donation of a donor
        - mile_{index}: Posted milestone details
        - paid_{index}: Payout made for a claimed milestone
        - yes_{index} / no_{index}: Vote weight tallies
        - voter_{vote_round}{address}: Weight cast by a donor in a vote
    """

    def __init__(self) -> None:
        self.owner = GlobalState(Account)
        self.status = GlobalState(UInt64(0))
        self.funding_goal = GlobalState(UInt64(0))
        self.deadline = GlobalState(UInt64(0))
        self.vote_end = GlobalState(UInt64(0))
        self.vote_window = GlobalState(UInt64(0))
        self.milestone_count = GlobalState(UInt64(0))
        self.claimed_count = GlobalState(UInt64(0))
        self.total_raised = GlobalState(UInt64(0))
        self.total_claimed = GlobalState(UInt64(0))
        self.total_refunded = GlobalState(UInt64(0))
        self.vote_round = GlobalState(UInt64(0))
        self.voting_milestone = GlobalState(UInt64(0))

        self.donations = BoxMap(Account, UInt64, key_prefix=b"don_")
        self.milestones = BoxMap(UInt64, arc4.String, key_prefix=b"mile_")
        self.payouts = BoxMap(UInt64, UInt64, key_prefix=b"paid_")
        self.yes_weight = BoxMap(UInt64, UInt64, key_prefix=b"yes_")
        self.no_weight = BoxMap(UInt64, UInt64, key_prefix=b"no_")
        self.voters = BoxMap(Bytes, UInt64, key_prefix=b"voter_")

    @arc4.abimethod(create="require")
    def create(self, vote_window: arc4.UInt64) -> None:
        """
        Create the crowdfunding application.
        The creator becomes the campaign owner.

        Args:
            vote_window: Number of rounds each milestone vote stays open
        """
        assert vote_window.as_uint64() > UInt64(0), ERR_ZERO_VOTE_WINDOW

        self.owner.value = Txn.sender
        self.vote_window.value = vote_window.as_uint64()

    # ------------------------------------------------------------------
    # Campaign lifecycle
    # ------------------------------------------------------------------

    @arc4.abimethod
    def create_campaign(
        self,
        goal: arc4.UInt64,
        duration: arc4.UInt64,
        milestone_count: arc4.UInt64,
    ) -> arc4.UInt64:
        """
        Open the campaign for donations.
        Only the owner can call this, and only once.

        Args:
            goal: Funding goal in microALGOs
            duration: Number of rounds the campaign accepts donations
            milestone_count: Number of milestones the funds are released in

        Returns:
            Round at which the campaign expires unless funded
        """
        self._only_owner()
        assert self.status.value == STATUS_PENDING, ERR_ALREADY_CREATED
        assert goal.as_uint64() > UInt64(0), ERR_ZERO_TARGET_GOAL
        assert duration.as_uint64() > UInt64(0), ERR_ZERO_DURATION
        assert milestone_count.as_uint64() > UInt64(0), ERR_ZERO_MILESTONES

        self.funding_goal.value = goal.as_uint64()
        self.milestone_count.value = milestone_count.as_uint64()
        self.deadline.value = Global.round + duration.as_uint64()
        self.status.value = STATUS_ACTIVE

        return arc4.UInt64(self.deadline.value)

    @arc4.abimethod
    def donate(
        self,
        payment: gtxn.PaymentTransaction,
        deposit: gtxn.PaymentTransaction,
    ) -> arc4.UInt64:
        """
        Donate to the campaign.
        Must be called with two payments from the caller to the application
        account in the same group: the donation and the storage deposit for
        the donor's record (zero once the donor already has one).

        Args:
            payment: The grouped payment carrying the donation
            deposit: The grouped payment covering box storage

        Returns:
            The amount donated
        """
        assert self.status.value == STATUS_ACTIVE, ERR_NOT_ACTIVE
        assert payment.amount > UInt64(0), ERR_ZERO_DONATION
        assert payment.sender == Txn.sender, ERR_INVALID_PAYMENT
        assert payment.receiver == Global.current_application_address, ERR_INVALID_PAYMENT

        storage_cost = UInt64(0)
        if Txn.sender not in self.donations:
            storage_cost = UInt64(DONATION_BOX_COST)
        self._check_deposit(deposit, storage_cost)

        amount = payment.amount
        donated = self.donations.get(Txn.sender, default=UInt64(0))
        self.donations[Txn.sender] = donated + amount
        self.total_raised.value = self.total_raised.value + amount

        if self.total_raised.value >= self.funding_goal.value:
            self.status.value = STATUS_FUNDED

        return arc4.UInt64(amount)

    @arc4.abimethod
    def check_deadline(self) -> arc4.UInt64:
        """
        Expire an active campaign whose deadline has passed.
        Anyone can call this; it is a no-op in any other situation.

        Returns:
            The campaign status after the check
        """
        if self.status.value == STATUS_ACTIVE and Global.round >= self.deadline.value:
            self.status.value = STATUS_EXPIRED

        return arc4.UInt64(self.status.value)

    @arc4.abimethod
    def check_vote_deadline(self) -> arc4.UInt64:
        """
        Close a milestone vote whose window has passed.
        An inconclusive vote lets the campaign continue (back to funded).

        Returns:
            The campaign status after the check
        """
        if self.status.value == STATUS_VOTE and Global.round >= self.vote_end.value:
            self.status.value = STATUS_FUNDED

        return arc4.UInt64(self.status.value)

    # ------------------------------------------------------------------
    # Milestones and voting
    # ------------------------------------------------------------------

    @arc4.abimethod
    def post_milestone(
        self,
        details: arc4.String,
        index: arc4.UInt64,
        deposit: gtxn.PaymentTransaction,
    ) -> None:
        """
        Post a milestone and put it to a vote.
        Only the owner can post milestones, and a claimed milestone is final.

        Args:
            details: Milestone description (1 to 100 bytes)
            index: Milestone index, starting at 1
            deposit: Grouped payment covering the milestone and tally boxes
        """
        self._only_owner()
        assert self.status.value == STATUS_FUNDED, ERR_INVALID_STATUS
        milestone = index.as_uint64()
        self._check_bounds(milestone)
        assert milestone not in self.payouts, ERR_ALREADY_CLAIMED
        length = details.native.bytes.length
        assert length > UInt64(0), ERR_EMPTY_DETAILS
        assert length <= UInt64(MAX_DETAILS_LENGTH), ERR_DETAILS_TOO_LONG

        # Re-posting only pays for the bytes the description grows by
        storage_cost = UInt64(0)
        if milestone in self.milestones:
            posted_size = self.milestones[milestone].bytes.length
            if details.bytes.length > posted_size:
                storage_cost = UInt64(BOX_BYTE_MIN_BALANCE) * (details.bytes.length - posted_size)
        else:
            storage_cost = self._box_cost(UInt64(MILESTONE_KEY_LENGTH) + details.bytes.length)
            storage_cost += UInt64(TALLY_BOXES_COST)
        self._check_deposit(deposit, storage_cost)

        self.milestones[milestone] = details
        self.yes_weight[milestone] = UInt64(0)
        self.no_weight[milestone] = UInt64(0)
        self.vote_round.value = self.vote_round.value + UInt64(1)
        self.voting_milestone.value = milestone
        self.vote_end.value = Global.round + self.vote_window.value
        self.status.value = STATUS_VOTE

    @arc4.abimethod
    def vote(
        self,
        index: arc4.UInt64,
        confidence: arc4.Bool,
        deposit: gtxn.PaymentTransaction,
    ) -> arc4.UInt64:
        """
        Vote on the milestone under vote, weighted by the caller's donation.
        The vote that gives either side more than half of the funds raised
        decides the milestone immediately.

        Args:
            index: Index of the milestone under vote
            confidence: True to let the campaign continue, False to cancel it
            deposit: Grouped payment covering the voter record box

        Returns:
            The campaign status after the vote
        """
        assert self.status.value == STATUS_VOTE, ERR_INVALID_STATUS
        milestone = index.as_uint64()
        self._check_bounds(milestone)
        assert milestone in self.milestones, ERR_MILESTONE_NOT_FOUND
        assert milestone == self.voting_milestone.value, ERR_INVALID_STATUS

        weight = self.donations.get(Txn.sender, default=UInt64(0))
        assert weight > UInt64(0), ERR_NO_DONATION

        voter_key = op.itob(self.vote_round.value) + Txn.sender.bytes
        assert voter_key not in self.voters, ERR_ALREADY_VOTED
        self._check_deposit(deposit, UInt64(VOTER_BOX_COST))

        self.voters[voter_key] = weight
        if confidence.native:
            self.yes_weight[milestone] = self.yes_weight[milestone] + weight
        else:
            self.no_weight[milestone] = self.no_weight[milestone] + weight

        # Majority is strictly more than half of everything raised
        half = self.total_raised.value // UInt64(2)
        if self.yes_weight[milestone] > half:
            self.status.value = STATUS_FUNDED
        elif self.no_weight[milestone] > half:
            self.status.value = STATUS_CANCELED

        return arc4.UInt64(self.status.value)

    @arc4.abimethod
    def claim_milestone_funds(
        self,
        index: arc4.UInt64,
        deposit: gtxn.PaymentTransaction,
    ) -> arc4.UInt64:
        """
        Release the funds of a posted milestone to the owner.
        Each milestone pays out an equal share of the funds raised, once.

        Args:
            index: Index of the milestone to claim
            deposit: Grouped payment covering the payout record box

        Returns:
            The amount paid out
        """
        self._only_owner()
        assert self.status.value == STATUS_FUNDED, ERR_INVALID_STATUS
        milestone = index.as_uint64()
        self._check_bounds(milestone)
        assert milestone in self.milestones, ERR_MILESTONE_NOT_FOUND
        assert milestone not in self.payouts, ERR_ALREADY_CLAIMED
        self._check_deposit(deposit, UInt64(PAYOUT_BOX_COST))

        payout = self.total_raised.value // self.milestone_count.value
        assert payout <= self._custody(), ERR_NOT_ENOUGH_FUNDS

        self.payouts[milestone] = payout
        self.total_claimed.value = self.total_claimed.value + payout
        self.claimed_count.value = self.claimed_count.value + UInt64(1)
        if self.claimed_count.value == self.milestone_count.value:
            self.status.value = STATUS_COMPLETED

        if payout > UInt64(0):
            itxn.Payment(
                receiver=self.owner.value,
                amount=payout,
                fee=0,
            ).submit()

        return arc4.UInt64(payout)

    # ------------------------------------------------------------------
    # Refunds
    # ------------------------------------------------------------------

    @arc4.abimethod
    def claim_refund(self) -> arc4.UInt64:
        """
        Claim a refund from an expired or canceled campaign.
        Every donor gets the same fraction of their donation back: the part
        of the funds raised that was never paid out to the owner.

        Returns:
            The amount refunded
        """
        assert (
            self.status.value == STATUS_EXPIRED or self.status.value == STATUS_CANCELED
        ), ERR_FROZEN_FUNDS

        donation = self.donations.get(Txn.sender, default=UInt64(0))
        assert donation > UInt64(0), ERR_NO_REFUND

        # donation * (raised - claimed) / raised, with a 128-bit product
        remaining = self.total_raised.value - self.total_claimed.value
        high, low = op.mulw(donation, remaining)
        refund = op.divw(high, low, self.total_raised.value)
        assert refund <= self._custody(), ERR_NOT_ENOUGH_FUNDS

        self.donations[Txn.sender] = UInt64(0)
        self.total_refunded.value = self.total_refunded.value + refund

        if refund > UInt64(0):
            itxn.Payment(
                receiver=Txn.sender,
                amount=refund,
                fee=0,
            ).submit()

        return arc4.UInt64(refund)

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    @arc4.abimethod(readonly=True)
    def get_status(self) -> arc4.UInt64:
        return arc4.UInt64(self.status.value)

    @arc4.abimethod(readonly=True)
    def get_funding_goal(self) -> arc4.UInt64:
        return arc4.UInt64(self.funding_goal.value)

    @arc4.abimethod(readonly=True)
    def get_deadline_block_height(self) -> arc4.UInt64:
        return arc4.UInt64(self.deadline.value)

    @arc4.abimethod(readonly=True)
    def get_vote_end_block_height(self) -> arc4.UInt64:
        return arc4.UInt64(self.vote_end.value)

    @arc4.abimethod(readonly=True)
    def get_num_of_milestones(self) -> arc4.UInt64:
        return arc4.UInt64(self.milestone_count.value)

    @arc4.abimethod(readonly=True)
    def get_donation_amount(self, donor: arc4.Address) -> arc4.UInt64:
        """
        Get a donor's cumulative donation (zero once refunded).

        Args:
            donor: Address of the donor

        Returns:
            Donation amount in microALGOs
        """
        return arc4.UInt64(self.donations.get(Account(donor.bytes), default=UInt64(0)))

    @arc4.abimethod(readonly=True)
    def get_milestone(self, index: arc4.UInt64) -> arc4.Tuple[arc4.Bool, arc4.String]:
        """
        Get milestone details.

        Args:
            index: Index of the milestone

        Returns:
            Tuple of (posted, details); details are empty when not posted
        """
        if index.as_uint64() in self.milestones:
            return arc4.Tuple((arc4.Bool(True), self.milestones[index.as_uint64()]))
        return arc4.Tuple((arc4.Bool(False), arc4.String("")))

    @arc4.abimethod(readonly=True)
    def get_vote_tally(self, index: arc4.UInt64) -> arc4.Tuple[arc4.UInt64, arc4.UInt64]:
        """
        Get the vote weights cast on a milestone.

        Returns:
            Tuple of (yes_weight, no_weight)
        """
        return arc4.Tuple((
            arc4.UInt64(self.yes_weight.get(index.as_uint64(), default=UInt64(0))),
            arc4.UInt64(self.no_weight.get(index.as_uint64(), default=UInt64(0))),
        ))

    @arc4.abimethod(readonly=True)
    def get_totals(self) -> arc4.Tuple[arc4.UInt64, arc4.UInt64, arc4.UInt64]:
        """
        Get the settlement counters.

        Returns:
            Tuple of (total_raised, total_claimed, total_refunded)
        """
        return arc4.Tuple((
            arc4.UInt64(self.total_raised.value),
            arc4.UInt64(self.total_claimed.value),
            arc4.UInt64(self.total_refunded.value),
        ))

    @arc4.abimethod(readonly=True)
    def get_balance(self) -> arc4.UInt64:
        """
        Get the funds held in custody for the owner and the donors.
        Storage deposits and the application's own minimum balance are not
        part of custody.

        Returns:
            total_raised - total_claimed - total_refunded, in microALGOs
        """
        return arc4.UInt64(self._custody())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @subroutine
    def _only_owner(self) -> None:
        assert Txn.sender == self.owner.value, ERR_NOT_OWNER

    @subroutine
    def _check_bounds(self, index: UInt64) -> None:
        assert index >= UInt64(1), ERR_OUT_OF_BOUNDS
        assert index <= self.milestone_count.value, ERR_OUT_OF_BOUNDS

    @subroutine
    def _check_deposit(self, deposit: gtxn.PaymentTransaction, cost: UInt64) -> None:
        assert deposit.sender == Txn.sender, ERR_INVALID_PAYMENT
        assert deposit.receiver == Global.current_application_address, ERR_INVALID_PAYMENT
        assert deposit.amount >= cost, ERR_STORAGE_DEPOSIT

    @subroutine
    def _box_cost(self, size: UInt64) -> UInt64:
        # size is name length plus value length
        return UInt64(BOX_FLAT_MIN_BALANCE) + UInt64(BOX_BYTE_MIN_BALANCE) * size

    @subroutine
    def _custody(self) -> UInt64:
        # Funds still owed to the owner and the donors
        return self.total_raised.value - self.total_claimed.value - self.total_refunded.value
