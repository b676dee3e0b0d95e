"""
Milestone Crowdfunding Client

Command line access to every entry point and query of a deployed
Crowdfunding application.

Usage:
    python scripts/crowdfunding_client.py status
    python scripts/crowdfunding_client.py create-campaign --goal 1000000 --duration 100 --milestones 2
    python scripts/crowdfunding_client.py donate --amount 500000
    python scripts/crowdfunding_client.py post-milestone --index 1 --details "Prototype shipped"
    python scripts/crowdfunding_client.py vote --index 1 --yes
    python scripts/crowdfunding_client.py claim-milestone --index 1
    python scripts/crowdfunding_client.py claim-refund

Environment variables:
- ALGOD_SERVER / ALGOD_TOKEN: Algorand node
- CROWDFUNDING_APP_ID: Deployed application ID
- CALLER_MNEMONIC: Account making the calls (falls back to DEPLOYER_MNEMONIC)
- BUILD_DIR: Directory holding Crowdfunding.arc56.json (default build)

Rejected calls are explained with the contract's rejection reason and its
numeric error code.
"""

import os
import re
import json
import base64
import argparse
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv
from algosdk import abi, account, constants, encoding, mnemonic, transaction
from algosdk.atomic_transaction_composer import (
    AccountTransactionSigner,
    AtomicTransactionComposer,
    TransactionWithSigner,
)
from algosdk.error import AlgodHTTPError
from algosdk.v2client import algod

load_dotenv()


# Campaign status register
STATUS_NAMES = {
    0: "Pending",
    1: "Active",
    2: "Funded",
    3: "Expired",
    4: "Vote",
    5: "Canceled",
    6: "Completed",
}

# Rejection reason -> numeric error code
ERROR_CODES = {
    "ERR_NOT_OWNER": 400,
    "ERR_ALREADY_CREATED": 401,
    "ERR_ZERO_TARGET_GOAL": 402,
    "ERR_ZERO_DURATION": 403,
    "ERR_ZERO_MILESTONES": 404,
    "ERR_ZERO_DONATION": 405,
    "ERR_NOT_ACTIVE": 406,
    "ERR_NOT_ENOUGH_FUNDS": 407,
    "ERR_FROZEN_FUNDS": 409,
    "ERR_NO_REFUND": 410,
    "ERR_OUT_OF_BOUNDS": 412,
    "ERR_MILESTONE_NOT_FOUND": 413,
    "ERR_EMPTY_DETAILS": 414,
    "ERR_INVALID_STATUS": 415,
    "ERR_NO_DONATION": 416,
    "ERR_ALREADY_VOTED": 417,
    "ERR_ALREADY_CLAIMED": 419,
    "ERR_DETAILS_TOO_LONG": 420,
    "ERR_INVALID_PAYMENT": 421,
    "ERR_ZERO_VOTE_WINDOW": 422,
    "ERR_STORAGE_DEPOSIT": 423,
}

PC_PATTERN = re.compile(r"pc=(\d+)")
REASON_PATTERN = re.compile(r"ERR_[A-Z_]+")

# ABI methods of the Crowdfunding contract
METHODS = {
    name: abi.Method.from_signature(signature)
    for name, signature in {
        "create_campaign": "create_campaign(uint64,uint64,uint64)uint64",
        "donate": "donate(pay,pay)uint64",
        "check_deadline": "check_deadline()uint64",
        "check_vote_deadline": "check_vote_deadline()uint64",
        "post_milestone": "post_milestone(string,uint64,pay)void",
        "vote": "vote(uint64,bool,pay)uint64",
        "claim_milestone_funds": "claim_milestone_funds(uint64,pay)uint64",
        "claim_refund": "claim_refund()uint64",
    }.items()
}


# -------- Configuration --------

def get_algod_client() -> algod.AlgodClient:
    """Create Algorand client from environment variables."""
    server = os.getenv("ALGOD_SERVER", "http://localhost:4001")
    token = os.getenv("ALGOD_TOKEN", "a" * 64)
    return algod.AlgodClient(token, server)


def get_caller_account() -> tuple[str, str]:
    """Get the calling account from CALLER_MNEMONIC or DEPLOYER_MNEMONIC."""
    mnemonic_phrase = os.getenv("CALLER_MNEMONIC") or os.getenv("DEPLOYER_MNEMONIC")
    if not mnemonic_phrase:
        raise ValueError("CALLER_MNEMONIC (or DEPLOYER_MNEMONIC) not set in environment")

    private_key = mnemonic.to_private_key(mnemonic_phrase)
    address = account.address_from_private_key(private_key)
    return private_key, address


def get_app_id() -> int:
    """Get the application ID from CROWDFUNDING_APP_ID."""
    app_id = os.getenv("CROWDFUNDING_APP_ID")
    if not app_id:
        raise ValueError("CROWDFUNDING_APP_ID not set in environment (run scripts/deploy.py)")
    return int(app_id)


# -------- State decoding --------

def itob(value: int) -> bytes:
    return value.to_bytes(8, "big")


def donation_box_name(address: str) -> bytes:
    return b"don_" + encoding.decode_address(address)


def milestone_box_name(index: int) -> bytes:
    return b"mile_" + itob(index)


def payout_box_name(index: int) -> bytes:
    return b"paid_" + itob(index)


def yes_box_name(index: int) -> bytes:
    return b"yes_" + itob(index)


def no_box_name(index: int) -> bytes:
    return b"no_" + itob(index)


def voter_box_name(vote_round: int, address: str) -> bytes:
    """Voter records are scoped to a single milestone posting."""
    return b"voter_" + itob(vote_round) + encoding.decode_address(address)


def decode_global_state(items: list[dict]) -> dict:
    """
    Decode the global-state entries returned by algod.

    Byte values holding a 32-byte public key are turned into addresses.
    """
    state = {}
    for item in items:
        key = base64.b64decode(item["key"]).decode("utf-8")
        value = item["value"]
        if value["type"] == 1:  # bytes
            raw = base64.b64decode(value["bytes"])
            state[key] = encoding.encode_address(raw) if len(raw) == 32 else raw
        else:  # uint
            state[key] = value.get("uint", 0)
    return state


def decode_uint64(value: bytes) -> int:
    return int.from_bytes(value, "big")


def decode_arc4_string(value: bytes) -> str:
    """Decode an ARC-4 string (2-byte length prefix followed by UTF-8)."""
    length = int.from_bytes(value[:2], "big")
    return value[2:2 + length].decode("utf-8")


# -------- Storage deposits --------

# Box minimum balance: 2500 per box plus 400 per byte of name and value
BOX_FLAT_MIN_BALANCE = 2_500
BOX_BYTE_MIN_BALANCE = 400


def box_cost(name: bytes, value_length: int) -> int:
    return BOX_FLAT_MIN_BALANCE + BOX_BYTE_MIN_BALANCE * (len(name) + value_length)


def encode_arc4_string(text: str) -> bytes:
    data = text.encode("utf-8")
    return len(data).to_bytes(2, "big") + data


def donation_deposit(address: str, has_donated: bool) -> int:
    """Deposit for a donation: only the first one creates a box."""
    if has_donated:
        return 0
    return box_cost(donation_box_name(address), 8)


def milestone_deposit(index: int, details: str, posted: Optional[bytes] = None) -> int:
    """
    Deposit for posting a milestone.

    A new posting pays for the milestone box and both tally boxes. A
    re-posting pays only for the bytes its description grows by.
    """
    encoded = encode_arc4_string(details)
    if posted is not None:
        return BOX_BYTE_MIN_BALANCE * max(0, len(encoded) - len(posted))
    return (
        box_cost(milestone_box_name(index), len(encoded))
        + box_cost(yes_box_name(index), 8)
        + box_cost(no_box_name(index), 8)
    )


def voter_deposit(vote_round: int, address: str) -> int:
    return box_cost(voter_box_name(vote_round, address), 8)


def payout_deposit(index: int) -> int:
    return box_cost(payout_box_name(index), 8)


def read_global_state(client: algod.AlgodClient, app_id: int) -> dict:
    """Read global state of the application."""
    app_info = client.application_info(app_id)
    return decode_global_state(app_info.get("params", {}).get("global-state", []))


def read_box(client: algod.AlgodClient, app_id: int, name: bytes) -> Optional[bytes]:
    """Read a box value, or None when the box does not exist."""
    try:
        response = client.application_box_by_name(app_id, name)
    except AlgodHTTPError as e:
        if e.code == 404:
            return None
        raise
    return base64.b64decode(response["value"])


# -------- Error reporting --------

def load_error_map(arc56_path: Path) -> dict[int, str]:
    """
    Map approval program counters to rejection reasons.

    Uses the source info the compiler writes into the ARC-56 app spec.
    """
    if not arc56_path.exists():
        return {}

    app_spec = json.loads(arc56_path.read_text())
    source_info = app_spec.get("sourceInfo", {}).get("approval", {}).get("sourceInfo", [])

    error_map = {}
    for entry in source_info:
        message = entry.get("errorMessage")
        if not message:
            continue
        for pc in entry.get("pc", []):
            error_map[pc] = message
    return error_map


def explain_error(message: str, error_map: dict[int, str]) -> Optional[tuple[str, int]]:
    """
    Find the rejection reason and error code behind a failed call.

    Returns:
        Tuple of (reason, code), or None if the failure is not a rejection
    """
    reason = None

    match = PC_PATTERN.search(message)
    if match:
        reason = error_map.get(int(match.group(1)))

    if reason is None:
        named = REASON_PATTERN.search(message)
        if named:
            reason = named.group(0)

    if reason not in ERROR_CODES:
        return None
    return reason, ERROR_CODES[reason]


# -------- Calls --------

def call_method(
    client: algod.AlgodClient,
    app_id: int,
    private_key: str,
    sender: str,
    method_name: str,
    method_args: list = None,
    boxes: list[bytes] = None,
    inner_txns: int = 0,
):
    """Call an ABI method and return its return value."""
    params = client.suggested_params()
    if inner_txns:
        # Fee pooling covers the inner payments
        params.flat_fee = True
        params.fee = constants.MIN_TXN_FEE * (1 + inner_txns)

    atc = AtomicTransactionComposer()
    atc.add_method_call(
        app_id=app_id,
        method=METHODS[method_name],
        sender=sender,
        sp=params,
        signer=AccountTransactionSigner(private_key),
        method_args=method_args or [],
        boxes=[(app_id, name) for name in (boxes or [])],
    )

    result = atc.execute(client, 4)
    return result.abi_results[0].return_value


def app_payment(client, app_id, private_key, sender, amount: int) -> TransactionWithSigner:
    """A payment to the application account, to be grouped with a call."""
    params = client.suggested_params()
    app_address = transaction.logic.get_application_address(app_id)
    return TransactionWithSigner(
        transaction.PaymentTxn(sender=sender, sp=params, receiver=app_address, amt=amount),
        AccountTransactionSigner(private_key),
    )


def create_campaign(client, app_id, private_key, sender, goal: int, duration: int, milestones: int):
    deadline = call_method(
        client, app_id, private_key, sender,
        "create_campaign", [goal, duration, milestones],
    )
    print(f"   ✅ Campaign created! Deadline round: {deadline}")


def donate(client, app_id, private_key, sender, amount: int):
    has_donated = read_box(client, app_id, donation_box_name(sender)) is not None
    payment = app_payment(client, app_id, private_key, sender, amount)
    deposit = app_payment(
        client, app_id, private_key, sender, donation_deposit(sender, has_donated)
    )

    donated = call_method(
        client, app_id, private_key, sender,
        "donate", [payment, deposit],
        boxes=[donation_box_name(sender)],
    )
    print(f"   ✅ Donated {donated} microALGOs")


def check_deadline(client, app_id, private_key, sender):
    status = call_method(client, app_id, private_key, sender, "check_deadline")
    print(f"   Status: {STATUS_NAMES.get(status, status)}")


def check_vote_deadline(client, app_id, private_key, sender):
    status = call_method(client, app_id, private_key, sender, "check_vote_deadline")
    print(f"   Status: {STATUS_NAMES.get(status, status)}")


def post_milestone(client, app_id, private_key, sender, index: int, details: str):
    posted = read_box(client, app_id, milestone_box_name(index))
    deposit = app_payment(
        client, app_id, private_key, sender, milestone_deposit(index, details, posted)
    )

    call_method(
        client, app_id, private_key, sender,
        "post_milestone", [details, index, deposit],
        boxes=[
            milestone_box_name(index),
            payout_box_name(index),
            yes_box_name(index),
            no_box_name(index),
        ],
    )
    print(f"   ✅ Milestone {index} posted, vote is open")


def vote(client, app_id, private_key, sender, index: int, confidence: bool):
    state = read_global_state(client, app_id)
    vote_round = state.get("vote_round", 0)
    deposit = app_payment(
        client, app_id, private_key, sender, voter_deposit(vote_round, sender)
    )

    status = call_method(
        client, app_id, private_key, sender,
        "vote", [index, confidence, deposit],
        boxes=[
            milestone_box_name(index),
            donation_box_name(sender),
            voter_box_name(vote_round, sender),
            yes_box_name(index),
            no_box_name(index),
        ],
    )
    print(f"   ✅ Vote recorded. Status: {STATUS_NAMES.get(status, status)}")


def claim_milestone_funds(client, app_id, private_key, sender, index: int):
    deposit = app_payment(client, app_id, private_key, sender, payout_deposit(index))

    payout = call_method(
        client, app_id, private_key, sender,
        "claim_milestone_funds", [index, deposit],
        boxes=[milestone_box_name(index), payout_box_name(index)],
        inner_txns=1,
    )
    print(f"   ✅ Claimed {payout} microALGOs for milestone {index}")


def claim_refund(client, app_id, private_key, sender):
    refund = call_method(
        client, app_id, private_key, sender,
        "claim_refund",
        boxes=[donation_box_name(sender)],
        inner_txns=1,
    )
    print(f"   ✅ Refunded {refund} microALGOs")


# -------- Queries --------

def get_donation_amount(client, app_id: int, donor: str) -> int:
    value = read_box(client, app_id, donation_box_name(donor))
    return decode_uint64(value) if value is not None else 0


def get_milestone(client, app_id: int, index: int) -> tuple[bool, str]:
    value = read_box(client, app_id, milestone_box_name(index))
    if value is None:
        return False, ""
    return True, decode_arc4_string(value)


def get_vote_tally(client, app_id: int, index: int) -> tuple[int, int]:
    yes = read_box(client, app_id, yes_box_name(index))
    no = read_box(client, app_id, no_box_name(index))
    return (
        decode_uint64(yes) if yes is not None else 0,
        decode_uint64(no) if no is not None else 0,
    )


def get_balance(client, app_id: int) -> int:
    """Funds held for the owner and the donors, from the campaign totals."""
    state = read_global_state(client, app_id)
    return (
        state.get("total_raised", 0)
        - state.get("total_claimed", 0)
        - state.get("total_refunded", 0)
    )


def get_account_balance(client, app_id: int) -> int:
    """Application account balance, including storage deposits."""
    info = client.account_info(transaction.logic.get_application_address(app_id))
    return info["amount"]


def show_status(client, app_id: int, donor: Optional[str] = None):
    """Print the campaign record, its milestones and optionally a donation."""
    state = read_global_state(client, app_id)
    status = state.get("status", 0)

    print(f"\n📍 App ID: {app_id}")
    print(f"   Owner: {state.get('owner', '-')}")
    print(f"   Status: {STATUS_NAMES.get(status, status)}")
    print(f"   Funding goal: {state.get('funding_goal', 0)}")
    print(f"   Deadline round: {state.get('deadline', 0)}")
    print(f"   Vote end round: {state.get('vote_end', 0)}")
    print(f"   Milestones: {state.get('claimed_count', 0)}/{state.get('milestone_count', 0)} claimed")
    print(f"   Raised: {state.get('total_raised', 0)}")
    print(f"   Claimed: {state.get('total_claimed', 0)}")
    print(f"   Refunded: {state.get('total_refunded', 0)}")
    print(f"   Balance: {get_balance(client, app_id)}")
    print(f"   Account balance: {get_account_balance(client, app_id)}")

    for index in range(1, state.get("milestone_count", 0) + 1):
        posted, details = get_milestone(client, app_id, index)
        if not posted:
            continue
        yes, no = get_vote_tally(client, app_id, index)
        print(f"\n   Milestone {index}: {details}")
        print(f"      Yes: {yes}  No: {no}")

    if donor:
        print(f"\n   Donation of {donor}: {get_donation_amount(client, app_id, donor)}")


def main():
    parser = argparse.ArgumentParser(description="Milestone Crowdfunding client")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status_parser = subparsers.add_parser("status", help="Show campaign state")
    status_parser.add_argument("--donor", help="Also show this address's donation")

    create_parser = subparsers.add_parser("create-campaign", help="Open the campaign (owner)")
    create_parser.add_argument("--goal", type=int, required=True, help="Funding goal in microALGOs")
    create_parser.add_argument("--duration", type=int, required=True, help="Duration in rounds")
    create_parser.add_argument("--milestones", type=int, required=True, help="Number of milestones")

    donate_parser = subparsers.add_parser("donate", help="Donate to the campaign")
    donate_parser.add_argument("--amount", type=int, required=True, help="Amount in microALGOs")

    subparsers.add_parser("check-deadline", help="Expire the campaign if its deadline passed")
    subparsers.add_parser("check-vote-deadline", help="Close the vote if its window passed")

    post_parser = subparsers.add_parser("post-milestone", help="Post a milestone (owner)")
    post_parser.add_argument("--index", type=int, required=True, help="Milestone index (from 1)")
    post_parser.add_argument("--details", required=True, help="Milestone description")

    vote_parser = subparsers.add_parser("vote", help="Vote on the milestone under vote")
    vote_parser.add_argument("--index", type=int, required=True, help="Milestone index")
    choice = vote_parser.add_mutually_exclusive_group(required=True)
    choice.add_argument("--yes", dest="confidence", action="store_true", help="Vote of confidence")
    choice.add_argument("--no", dest="confidence", action="store_false", help="Vote of no confidence")

    claim_parser = subparsers.add_parser("claim-milestone", help="Claim milestone funds (owner)")
    claim_parser.add_argument("--index", type=int, required=True, help="Milestone index")

    subparsers.add_parser("claim-refund", help="Claim a refund")

    args = parser.parse_args()

    client = get_algod_client()
    app_id = get_app_id()

    if args.command == "status":
        show_status(client, app_id, args.donor)
        return

    private_key, sender = get_caller_account()
    print(f"\n📍 Caller: {sender}")

    error_map = load_error_map(Path(os.getenv("BUILD_DIR", "build")) / "Crowdfunding.arc56.json")

    try:
        if args.command == "create-campaign":
            create_campaign(client, app_id, private_key, sender, args.goal, args.duration, args.milestones)
        elif args.command == "donate":
            donate(client, app_id, private_key, sender, args.amount)
        elif args.command == "check-deadline":
            check_deadline(client, app_id, private_key, sender)
        elif args.command == "check-vote-deadline":
            check_vote_deadline(client, app_id, private_key, sender)
        elif args.command == "post-milestone":
            post_milestone(client, app_id, private_key, sender, args.index, args.details)
        elif args.command == "vote":
            vote(client, app_id, private_key, sender, args.index, args.confidence)
        elif args.command == "claim-milestone":
            claim_milestone_funds(client, app_id, private_key, sender, args.index)
        elif args.command == "claim-refund":
            claim_refund(client, app_id, private_key, sender)
    except AlgodHTTPError as e:
        explained = explain_error(str(e), error_map)
        if explained is None:
            raise
        reason, code = explained
        print(f"   ❌ Rejected: {reason} (u{code})")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
