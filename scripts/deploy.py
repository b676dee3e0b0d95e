"""
Deployment Script for the Milestone Crowdfunding Contract

Deploys the compiled Crowdfunding application and funds its account so it
can hold boxes. The deployer becomes the campaign owner.
Run with: python scripts/deploy.py

Build the contract first:
    algokit project run build

Environment variables:
- ALGOD_SERVER: Algorand node URL
- ALGOD_TOKEN: Algorand node token
- DEPLOYER_MNEMONIC: 25-word mnemonic for deployer account
- NETWORK: localnet | testnet | mainnet
- VOTE_WINDOW_BLOCKS: Rounds each milestone vote stays open (default 144)
- APP_FUNDING: microALGOs sent to the app account for its base minimum
  balance (default 100000); callers pay for the boxes they create
- BUILD_DIR: Directory holding the compiled TEAL (default build)
"""

import os
import json
import base64
from pathlib import Path
from dotenv import load_dotenv
from algosdk import abi, account, mnemonic
from algosdk.v2client import algod
from algosdk import transaction

# Load environment variables
load_dotenv()

APP_NAME = "Crowdfunding"

# owner (bytes); status, goal, deadline, vote_end, vote_window, milestone
# count, claimed count, three totals, vote_round, voting_milestone (ints)
GLOBAL_INTS = 12
GLOBAL_BYTES = 1

CREATE_METHOD = abi.Method.from_signature("create(uint64)void")


def get_algod_client() -> algod.AlgodClient:
    """Create Algorand client from environment variables."""
    server = os.getenv("ALGOD_SERVER", "http://localhost:4001")
    token = os.getenv("ALGOD_TOKEN", "a" * 64)

    return algod.AlgodClient(token, server)


def get_deployer_account() -> tuple[str, str]:
    """Get deployer account from mnemonic."""
    mnemonic_phrase = os.getenv("DEPLOYER_MNEMONIC")

    if not mnemonic_phrase:
        # For localnet, use default account
        print("Warning: No DEPLOYER_MNEMONIC set. Using generated account for localnet.")
        private_key, address = account.generate_account()
        return private_key, address

    private_key = mnemonic.to_private_key(mnemonic_phrase)
    address = account.address_from_private_key(private_key)

    return private_key, address


def get_vote_window() -> int:
    """Rounds each milestone vote stays open (about 10 minutes at 144)."""
    vote_window = int(os.getenv("VOTE_WINDOW_BLOCKS", "144"))
    if vote_window <= 0:
        raise ValueError("VOTE_WINDOW_BLOCKS must be a positive number of rounds")
    return vote_window


def read_programs(build_dir: Path) -> tuple[str, str]:
    """Read the compiled approval and clear TEAL sources."""
    approval_path = build_dir / f"{APP_NAME}.approval.teal"
    clear_path = build_dir / f"{APP_NAME}.clear.teal"

    if not approval_path.exists() or not clear_path.exists():
        raise FileNotFoundError(
            f"Compiled TEAL not found in {build_dir}. Run: algokit project run build"
        )

    return approval_path.read_text(), clear_path.read_text()


def compile_contract(client: algod.AlgodClient, source_code: str) -> bytes:
    """Compile TEAL source code."""
    compile_response = client.compile(source_code)
    return base64.b64decode(compile_response["result"])


def create_app_args(vote_window: int) -> list[bytes]:
    """ABI arguments for the create(uint64)void creation method."""
    return [
        CREATE_METHOD.get_selector(),
        abi.ABIType.from_string("uint64").encode(vote_window),
    ]


def deploy_contract(
    client: algod.AlgodClient,
    private_key: str,
    sender: str,
    approval_program: bytes,
    clear_program: bytes,
    vote_window: int,
) -> int:
    """Deploy the Crowdfunding application and return the app ID."""
    params = client.suggested_params()

    txn = transaction.ApplicationCreateTxn(
        sender=sender,
        sp=params,
        on_complete=transaction.OnComplete.NoOpOC,
        approval_program=approval_program,
        clear_program=clear_program,
        global_schema=transaction.StateSchema(GLOBAL_INTS, GLOBAL_BYTES),
        local_schema=transaction.StateSchema(0, 0),
        app_args=create_app_args(vote_window),
    )

    signed_txn = txn.sign(private_key)
    tx_id = client.send_transaction(signed_txn)
    print(f"   Transaction ID: {tx_id}")

    # Wait for confirmation
    result = transaction.wait_for_confirmation(client, tx_id, 4)
    app_id = result["application-index"]

    return app_id


def fund_app(
    client: algod.AlgodClient,
    private_key: str,
    sender: str,
    app_id: int,
    amount: int,
) -> str:
    """Send microALGOs to the app account to cover its base minimum balance."""
    params = client.suggested_params()
    app_address = transaction.logic.get_application_address(app_id)

    txn = transaction.PaymentTxn(sender=sender, sp=params, receiver=app_address, amt=amount)
    tx_id = client.send_transaction(txn.sign(private_key))
    transaction.wait_for_confirmation(client, tx_id, 4)

    return tx_id


def main():
    """Main deployment function."""
    print("=" * 60)
    print("Milestone Crowdfunding - Smart Contract Deployment")
    print("=" * 60)

    # Get network info
    network = os.getenv("NETWORK", "localnet")
    print(f"\nNetwork: {network}")

    # Initialize client
    client = get_algod_client()

    # Get deployer account
    private_key, deployer = get_deployer_account()
    print(f"Deployer: {deployer}")

    # Check balance
    try:
        account_info = client.account_info(deployer)
        balance = account_info["amount"] / 1_000_000
        print(f"Balance: {balance:.6f} ALGO")

        if balance < 1:
            print("\nWarning: Low balance. Fund your account before deploying.")
            if network == "localnet":
                print("Run: algokit goal clerk send -a 10000000 -f <dispenser> -t " + deployer)
    except Exception as e:
        print(f"Could not check balance: {e}")

    print("\n" + "-" * 60)
    print("Contract Deployment")
    print("-" * 60)

    vote_window = get_vote_window()
    app_funding = int(os.getenv("APP_FUNDING", "100000"))
    build_dir = Path(os.getenv("BUILD_DIR", "build"))

    print(f"\n📄 {APP_NAME}")
    print(f"   Build: {build_dir}")
    print(f"   Global: {GLOBAL_INTS} ints, {GLOBAL_BYTES} bytes")
    print(f"   Vote window: {vote_window} rounds")

    try:
        approval_source, clear_source = read_programs(build_dir)
    except FileNotFoundError as e:
        print(f"   ❌ {e}")
        return

    approval_program = compile_contract(client, approval_source)
    clear_program = compile_contract(client, clear_source)

    app_id = deploy_contract(
        client=client,
        private_key=private_key,
        sender=deployer,
        approval_program=approval_program,
        clear_program=clear_program,
        vote_window=vote_window,
    )
    app_address = transaction.logic.get_application_address(app_id)
    print(f"   ✅ Deployed: App ID {app_id}")
    print(f"   App address: {app_address}")

    fund_app(client, private_key, deployer, app_id, app_funding)
    print(f"   💰 Funded app account with {app_funding / 1_000_000:.6f} ALGO")

    # Save deployment info
    output_path = Path("deployment.json")
    deployment_info = {
        "network": network,
        "deployer": deployer,
        "contracts": {
            APP_NAME: {
                "app_id": app_id,
                "app_address": app_address,
                "vote_window": vote_window,
            },
        },
    }

    with open(output_path, "w") as f:
        json.dump(deployment_info, f, indent=2)

    print(f"\nDeployment info saved to: {output_path}")

    print("\n📝 Add this to your .env file:")
    print(f"   CROWDFUNDING_APP_ID={app_id}")

    print("\n" + "=" * 60)
    print("🎉 DEPLOYMENT COMPLETE!")
    print("=" * 60 + "\n")


if __name__ == "__main__":
    main()
