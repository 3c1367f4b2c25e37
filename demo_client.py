#!/usr/bin/env python3
"""
x402 VRF Mint Demo Client

This script demonstrates the complete x402 payment flow:
1. Request the mint endpoint → Get 402 with payment details
2. Sign an EIP-3009 USDC transfer authorization
3. Retry with X-PAYMENT → Get the NFT request id and settlement receipt
4. Poll the request until the VRF fulfillment lands

Usage:
    python demo_client.py --private-key <hex> [--api-url http://localhost:4023]
"""

import argparse
import asyncio
import base64
import json
import os

import httpx
from eth_account import Account

from x402_vrf.client import PAYMENT_RESPONSE_HEADER, PaymentRequiredError, payment_client


async def demo_payment_flow(private_key: str, api_url: str = "http://localhost:4023", max_amount: int = None):
    """Run the complete x402 payment demo."""

    print("=" * 70)
    print("x402 VRF Mint Demo - USDC payments via EIP-3009")
    print("=" * 70)
    print()

    account = Account.from_key(private_key)
    print(f"✅ Wallet loaded: {account.address}")
    print()

    # Step 1: Request without payment
    print("Step 1: Request Mint Endpoint (No Payment)")
    print("-" * 70)
    print(f"POST {api_url}/request-mint")
    print()

    async with httpx.AsyncClient() as plain:
        try:
            response = await plain.post(f"{api_url}/request-mint")
        except httpx.ConnectError:
            print(f"❌ Failed to connect to {api_url}")
            print("   Make sure the gate is running:")
            print("   uvicorn x402_vrf.main:app --port 4023")
            return

    print(f"Status: {response.status_code}")
    if response.status_code != 402:
        print(f"❌ Unexpected status code: {response.status_code}")
        return

    details = response.json()["paymentDetails"]
    amount = int(details["maxAmountRequired"])
    print("✅ Received 402 Payment Required")
    print(f"💰 Payment Required:")
    print(f"   Amount: {amount} atomic units = {amount / 1_000_000} USDC")
    print(f"   Pay To: {details['payToAddress']}")
    print(f"   Network: {details['networkId']}")
    print()

    # Step 2 + 3: Pay and retry
    print("Step 2: Sign Authorization and Retry")
    print("-" * 70)
    async with payment_client(private_key, max_amount=max_amount, timeout=60.0) as client:
        try:
            response = await client.post(f"{api_url}/request-mint")
        except PaymentRequiredError as e:
            print(f"❌ Payment not accepted: {e}")
            return

        print(f"Status: {response.status_code}")
        content = response.json()
        print(json.dumps(content, indent=2))
        print()
        if response.status_code != 200:
            return

        receipt_header = response.headers.get(PAYMENT_RESPONSE_HEADER)
        if receipt_header:
            receipt = json.loads(base64.b64decode(receipt_header))
            print(f"🧾 Settlement: success={receipt['success']} tx={receipt.get('txHash')}")
            print()

        # Step 4: Wait for fulfillment
        print("Step 3: Wait for VRF Fulfillment")
        print("-" * 70)
        request_id = content["nftRequestId"]
        for _ in range(30):
            status = (await client.get(f"{api_url}/requests/{request_id}")).json()
            if status.get("fulfilled"):
                print(f"🎲 Token #{status['tokenId']} → {status['outcomeUri']}")
                break
            await asyncio.sleep(2)
        else:
            print("⏳ Not fulfilled yet, check GET /requests/{id} later")

    print()
    print("=" * 70)
    print("Demo Complete!")
    print("=" * 70)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="x402 VRF Mint Demo Client - USDC payments via EIP-3009"
    )
    parser.add_argument(
        "--private-key",
        type=str,
        help="Payer private key (hex); defaults to $PAYER_PRIVATE_KEY",
        default=os.environ.get("PAYER_PRIVATE_KEY"),
    )
    parser.add_argument(
        "--api-url",
        type=str,
        default="http://localhost:4023",
        help="Gate base URL (default: http://localhost:4023)",
    )
    parser.add_argument(
        "--max-amount",
        type=int,
        default=None,
        help="Refuse to pay more than this many atomic USDC units",
    )

    args = parser.parse_args()

    # If no key provided, create a demo wallet
    if not args.private_key:
        print("⚠️  No private key provided, generating demo wallet...")
        account = Account.create()
        args.private_key = "0x" + bytes(account.key).hex()
        print(f"Demo address: {account.address}")
        print()

    asyncio.run(demo_payment_flow(args.private_key, args.api_url, args.max_amount))


if __name__ == "__main__":
    main()
