import pytest

from whisperpay.src.errors import SubmissionError
from whisperpay.src.ledger import LocalLedger
from whisperpay.src.models import ParentChain

OPERATOR = "0x" + "0f" * 20
CREATOR = "0x" + "ab" * 20
OTHER_CREATOR = "0x" + "cd" * 20
DEALER = "0x" + "de" * 20
RECIPIENTS = ["0x" + "11" * 20, "0x" + "22" * 20, "0x" + "33" * 20]


class FakeFilter:
    def __init__(self, name, filter_id):
        self.name = name
        self.filter_id = filter_id
        self.pending = []

    def push(self, *logs):
        self.pending.extend(logs)

    def get_new_entries(self):
        entries, self.pending = self.pending, []
        return entries


class FakeChainClient:
    """In-memory stand-in for ParentChainClient. Records every call."""

    address = OPERATOR

    def __init__(self, base_fee=100_000_000, gas_price=None, chain=None):
        self.base_fee = base_fee
        self.gas_price = gas_price
        self.chain = chain or ParentChain(chain_id=421614, name="arbitrum-sepolia")
        self.resolve_error = None
        self.calls = []
        self.transfers = []
        self.failing_functions = set()
        self.failing_recipients = set()
        self.filters = {}
        self.uninstalled = []

    def resolve_parent_chain(self):
        if self.resolve_error is not None:
            raise self.resolve_error
        return self.chain

    def fee_inputs(self):
        return self.base_fee, self.gas_price

    def _tx_hash(self):
        return "0x" + f"{len(self.calls) + len(self.transfers):064x}"

    def call_contract(self, address, abi, function_name, *args, value=0, overrides=None):
        if function_name in self.failing_functions:
            raise SubmissionError(f"{function_name} reverted")
        self.calls.append(
            {
                "address": address,
                "function": function_name,
                "args": args,
                "value": value,
                "overrides": overrides,
            }
        )
        return self._tx_hash()

    def send_value(self, to, amount_wei):
        if to.lower() in self.failing_recipients:
            raise SubmissionError("insufficient funds for transfer")
        self.transfers.append((to.lower(), amount_wei))
        return self._tx_hash()

    def event_filter(self, address, abi, event_name):
        event_filter = FakeFilter(event_name, f"0x{len(self.filters) + 1:x}")
        self.filters[event_name] = event_filter
        return event_filter

    def uninstall_filter(self, event_filter):
        self.uninstalled.append(event_filter.name)
        return True

    def function_calls(self, name):
        return [c for c in self.calls if c["function"] == name]


def job_created_log(creator, tx_byte=1):
    return {
        "args": {
            "_backendDigest": "digest",
            "_jobDigest": b"\x00" * 32,
            "_chainId": 1234,
            "_jobCreator": creator,
        },
        "transactionHash": bytes([tx_byte]) * 32,
    }


def funds_arrived_log(amount=10**16, tx_byte=2):
    return {"args": {"_amount": amount}, "transactionHash": bytes([tx_byte]) * 32}


@pytest.fixture
def chain_client():
    return FakeChainClient()


@pytest.fixture
def ledger():
    return LocalLedger()


@pytest.fixture
def ledger_path(tmp_path):
    return str(tmp_path / "ledger.json")
