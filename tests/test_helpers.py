"""
Reference generation and address masking
"""

import re

from utils.helpers import (
    generate_buyer_reference, generate_escrow_number, generate_order_number, generate_payment_reference,
    mask_shipping_address,
)


def test_reference_formats():
    assert re.fullmatch(r"ORD-[0-9A-Z]+-[0-9A-Z]{5}", generate_order_number())
    assert re.fullmatch(r"ESC-[0-9A-Z]+-[0-9A-Z]{5}", generate_escrow_number())
    assert re.fullmatch(r"TXN-[0-9A-Z]+-[0-9A-Z]{9}", generate_payment_reference())
    assert re.fullmatch(r"BUY-[0-9A-Z]{8}", generate_buyer_reference())


def test_order_numbers_are_unique():
    assert len({generate_order_number() for _ in range(500)}) == 500


def test_masked_address_drops_contact_details():
    address = {"recipient": "A. Phiri", "phone": "0977", "street": "Plot 5", "city": "Kabwe", "country": "ZM"}

    assert mask_shipping_address(address) == {
        "city": "Kabwe", "state": None, "country": "ZM", "instructions": None,
    }
    assert mask_shipping_address(address, share_contact=True) == address
    assert mask_shipping_address(None)["city"] is None
