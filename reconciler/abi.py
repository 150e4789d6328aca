"""ABI of the payment contract events the reconciler consumes."""


def _event(name, inputs):
    return {
        "anonymous": False,
        "name": name,
        "type": "event",
        "inputs": [
            {"indexed": indexed, "internalType": type_, "name": arg, "type": type_}
            for arg, type_, indexed in inputs
        ],
    }


CONTRACT_ABI = [
    _event("PaymentMade", [
        ("payer", "address", True),
        ("merchant", "address", True),
        ("amount", "uint256", False),
        ("paymentType", "uint8", False),
        ("orderId", "string", False),
        ("timestamp", "uint256", False),
    ]),
    _event("SubscriptionCreated", [
        ("subscriber", "address", True),
        ("merchant", "address", True),
        ("amount", "uint256", False),
        ("interval", "uint256", False),
        ("subscriptionId", "string", False),
        ("timestamp", "uint256", False),
    ]),
    _event("SubscriptionPayment", [
        ("subscriber", "address", True),
        ("merchant", "address", True),
        ("amount", "uint256", False),
        ("subscriptionId", "string", False),
        ("paymentNumber", "uint256", False),
        ("timestamp", "uint256", False),
    ]),
    _event("SubscriptionCancelled", [
        ("subscriber", "address", True),
        ("subscriptionId", "string", False),
        ("timestamp", "uint256", False),
    ]),
]


def event_signature(name: str) -> str:
    """Canonical signature, e.g. ``PaymentMade(address,address,uint256,uint8,string,uint256)``."""
    for entry in CONTRACT_ABI:
        if entry["name"] == name:
            return f"{name}({','.join(arg['type'] for arg in entry['inputs'])})"
    raise KeyError(name)
