"""
Tests for the Crowdfunding deployment and client scripts

Tests cover:
- Box name derivation
- Global state and box value decoding
- Rejection reason lookup from the ARC-56 source info
- Storage deposit amounts
- Deployment configuration
"""

import base64
import json

import pytest
from algosdk import account, encoding

import contracts.crowdfunding.contract as crowdfunding_contract
from scripts.crowdfunding_client import (
    ERROR_CODES,
    METHODS,
    STATUS_NAMES,
    decode_arc4_string,
    decode_global_state,
    donation_box_name,
    donation_deposit,
    encode_arc4_string,
    explain_error,
    load_error_map,
    milestone_box_name,
    milestone_deposit,
    payout_deposit,
    voter_box_name,
    voter_deposit,
)
from scripts.deploy import create_app_args, get_vote_window, read_programs


def b64(value: bytes) -> str:
    return base64.b64encode(value).decode()


class TestCrowdfundingClient:
    """Test suite for the Crowdfunding client helpers."""

    @pytest.fixture
    def address(self) -> str:
        _, address = account.generate_account()
        return address

    def test_donation_box_name(self, address: str):
        """Test that donation boxes are keyed by the donor's public key."""
        name = donation_box_name(address)

        assert name[:4] == b"don_"
        assert name[4:] == encoding.decode_address(address)
        assert len(name) == 4 + 32

    def test_milestone_box_name(self):
        """Test that milestone boxes are keyed by the big-endian index."""
        assert milestone_box_name(1) == b"mile_" + b"\x00" * 7 + b"\x01"
        assert milestone_box_name(258) == b"mile_" + b"\x00" * 6 + b"\x01\x02"

    def test_voter_box_name_changes_with_vote_round(self, address: str):
        """Test that a new posting gives every donor a fresh voter record."""
        first = voter_box_name(1, address)
        second = voter_box_name(2, address)

        assert first != second
        assert first.startswith(b"voter_")
        assert first.endswith(encoding.decode_address(address))

    def test_decode_global_state(self, address: str):
        """Test decoding algod global state entries."""
        # Arrange
        items = [
            {"key": b64(b"status"), "value": {"type": 2, "uint": 4}},
            {"key": b64(b"total_raised"), "value": {"type": 2, "uint": 1100}},
            {"key": b64(b"vote_round"), "value": {"type": 2}},
            {
                "key": b64(b"owner"),
                "value": {"type": 1, "bytes": b64(encoding.decode_address(address))},
            },
        ]

        # Act
        state = decode_global_state(items)

        # Assert
        assert state["status"] == 4
        assert STATUS_NAMES[state["status"]] == "Vote"
        assert state["total_raised"] == 1100
        assert state["vote_round"] == 0
        assert state["owner"] == address

    def test_decode_arc4_string(self):
        """Test decoding a length-prefixed milestone description."""
        details = "Prototype shipped"
        encoded = len(details).to_bytes(2, "big") + details.encode()

        assert decode_arc4_string(encoded) == details
        assert decode_arc4_string(b"\x00\x00") == ""

    def test_every_rejection_reason_has_a_code(self):
        """Test that each contract rejection reason maps to a numeric code."""
        reasons = {
            value
            for name, value in vars(crowdfunding_contract).items()
            if name.startswith("ERR_")
        }

        assert reasons == set(ERROR_CODES)
        assert len(set(ERROR_CODES.values())) == len(ERROR_CODES)
        assert ERROR_CODES["ERR_NOT_OWNER"] == 400
        assert ERROR_CODES["ERR_ALREADY_CLAIMED"] == 419
        assert ERROR_CODES["ERR_STORAGE_DEPOSIT"] == 423

    def test_load_error_map(self, tmp_path):
        """Test reading program counters and reasons from an ARC-56 app spec."""
        # Arrange
        arc56_path = tmp_path / "Crowdfunding.arc56.json"
        arc56_path.write_text(json.dumps({
            "name": "Crowdfunding",
            "sourceInfo": {
                "approval": {
                    "sourceInfo": [
                        {"pc": [120, 121], "errorMessage": "ERR_NOT_OWNER"},
                        {"pc": [245], "errorMessage": "ERR_NOT_ACTIVE"},
                        {"pc": [300], "teal": 512},
                    ],
                    "pcOffsetMethod": "none",
                },
            },
        }))

        # Act
        error_map = load_error_map(arc56_path)

        # Assert
        assert error_map == {
            120: "ERR_NOT_OWNER",
            121: "ERR_NOT_OWNER",
            245: "ERR_NOT_ACTIVE",
        }

    def test_load_error_map_missing_file(self, tmp_path):
        """Test that a missing app spec yields an empty map."""
        assert load_error_map(tmp_path / "missing.arc56.json") == {}

    def test_explain_error_from_program_counter(self):
        """Test mapping a failed assert's program counter to its reason."""
        message = (
            "TransactionPool.Remember: transaction ABC: logic eval error: "
            "assert failed pc=245. Details: app=1001, pc=245, opcodes=..."
        )

        assert explain_error(message, {245: "ERR_NOT_ACTIVE"}) == ("ERR_NOT_ACTIVE", 406)

    def test_explain_error_from_reason_in_message(self):
        """Test falling back to a reason named in the error message."""
        message = "logic eval error: err opcode executed. Details: ERR_ALREADY_VOTED"

        assert explain_error(message, {}) == ("ERR_ALREADY_VOTED", 417)

    def test_explain_error_unrelated_failure(self):
        """Test that failures other than rejections are not explained."""
        assert explain_error("overspend (account ABC, data {...})", {}) is None
        assert explain_error("assert failed pc=999", {245: "ERR_NOT_ACTIVE"}) is None

    def test_method_signatures(self):
        """Test the ABI method signatures the client calls."""
        assert METHODS["donate"].get_signature() == "donate(pay,pay)uint64"
        assert METHODS["vote"].get_signature() == "vote(uint64,bool,pay)uint64"
        assert METHODS["post_milestone"].get_signature() == "post_milestone(string,uint64,pay)void"
        assert (
            METHODS["claim_milestone_funds"].get_signature()
            == "claim_milestone_funds(uint64,pay)uint64"
        )

    def test_storage_deposits_match_the_contract(self, address: str):
        """Test that the client pays exactly what the contract charges for boxes."""
        assert donation_deposit(address, has_donated=False) == crowdfunding_contract.DONATION_BOX_COST
        assert donation_deposit(address, has_donated=True) == 0
        assert voter_deposit(3, address) == crowdfunding_contract.VOTER_BOX_COST
        assert payout_deposit(1) == crowdfunding_contract.PAYOUT_BOX_COST

        details = "Prototype shipped"
        tallies = crowdfunding_contract.TALLY_BOXES_COST
        assert milestone_deposit(1, details) == 2_500 + 400 * (13 + 2 + len(details)) + tallies

    def test_milestone_deposit_for_reposting(self):
        """Test that re-posting only pays for a longer description."""
        posted = encode_arc4_string("Prototype")

        assert milestone_deposit(1, "Prototype", posted) == 0
        assert milestone_deposit(1, "Proto", posted) == 0
        assert milestone_deposit(1, "Prototype shipped", posted) == 400 * len(" shipped")
        assert decode_arc4_string(posted) == "Prototype"


class TestDeployment:
    """Test suite for the deployment script helpers."""

    def test_create_app_args(self):
        """Test encoding the vote window for the creation call."""
        selector, vote_window = create_app_args(144)

        assert len(selector) == 4
        assert vote_window == (144).to_bytes(8, "big")

    def test_vote_window_default(self, monkeypatch):
        """Test the default vote window."""
        monkeypatch.delenv("VOTE_WINDOW_BLOCKS", raising=False)

        assert get_vote_window() == 144

    def test_vote_window_must_be_positive(self, monkeypatch):
        """Test that a zero vote window is refused before deploying."""
        monkeypatch.setenv("VOTE_WINDOW_BLOCKS", "0")

        with pytest.raises(ValueError):
            get_vote_window()

    def test_read_programs_missing_build(self, tmp_path):
        """Test that deploying without a build points at the build command."""
        with pytest.raises(FileNotFoundError, match="algokit project run build"):
            read_programs(tmp_path)

    def test_read_programs(self, tmp_path):
        """Test reading the compiled TEAL sources."""
        (tmp_path / "Crowdfunding.approval.teal").write_text("#pragma version 10\n")
        (tmp_path / "Crowdfunding.clear.teal").write_text("#pragma version 10\npushint 1\n")

        approval, clear = read_programs(tmp_path)

        assert approval.startswith("#pragma version 10")
        assert clear.endswith("pushint 1\n")
