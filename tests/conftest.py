from __future__ import annotations

import copy
import os
import re
from types import SimpleNamespace
from typing import Any

os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
os.environ.setdefault("POWERTOOLS_TRACE_DISABLED", "1")
os.environ.setdefault("POWERTOOLS_SERVICE_NAME", "makerspace-scheduler")

import pytest  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402

from makerspace import dal, recurring, waitlist  # noqa: E402
from makerspace.models import Resource, ResourceCreate  # noqa: E402
from makerspace.roles import Identity, Role  # noqa: E402

_EXISTS_RE = re.compile(r"attribute_(not_)?exists\((.+)\)")
_COMPARE_RE = re.compile(r"(\S+)\s*(>=|<=|=)\s*(\S+)")


def _client_error(code: str, operation: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeTable:
    """In-memory stand-in for the boto3 Table calls the data layer makes."""

    def __init__(self, key: str):
        self.key = key
        self.items: dict[str, dict[str, Any]] = {}
        # raise on the n-th put_item (1-based) to exercise rollbacks
        self.fail_on_put: int | None = None
        self.puts = 0

    @staticmethod
    def _matches(item, expression, names, values) -> bool:
        for clause in (c.strip() for c in expression.split(" AND ")):
            exists = _EXISTS_RE.fullmatch(clause)
            if exists:
                field = names.get(exists.group(2), exists.group(2))
                present = item is not None and field in item
                if present == bool(exists.group(1)):
                    return False
                continue
            lhs, op, rhs = _COMPARE_RE.fullmatch(clause).groups()  # type: ignore[union-attr]
            field = names.get(lhs, lhs)
            if item is None or field not in item:
                return False
            actual, expected = item[field], values[rhs]
            if op == "=" and actual != expected:
                return False
            if (op == ">=" and actual < expected) or (op == "<=" and actual > expected):
                return False
        return True

    def put_item(self, Item, ConditionExpression=None, **kwargs):  # noqa NOSONAR
        self.puts += 1
        if self.fail_on_put is not None and self.puts >= self.fail_on_put:
            raise _client_error("ProvisionedThroughputExceededException", "PutItem")
        current = self.items.get(Item[self.key])
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        if ConditionExpression and not self._matches(current, ConditionExpression, names, values):
            raise _client_error("ConditionalCheckFailedException", "PutItem")
        self.items[Item[self.key]] = copy.deepcopy(Item)

    def get_item(self, Key):  # noqa NOSONAR
        item = self.items.get(Key[self.key])
        return {"Item": copy.deepcopy(item)} if item else {}

    def update_item(self, **kwargs):
        key = kwargs["Key"][self.key]
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        current = self.items.get(key)
        condition = kwargs.get("ConditionExpression")
        if condition and not self._matches(current, condition, names, values):
            raise _client_error("ConditionalCheckFailedException", "UpdateItem")

        attrs = copy.deepcopy(current) if current else {self.key: key}
        set_part = kwargs["UpdateExpression"].removeprefix("SET ")
        for assign in set_part.split(", "):
            name, val = (s.strip() for s in assign.split(" = "))
            attrs[names.get(name, name)] = values[val]
        self.items[key] = attrs
        return {"Attributes": copy.deepcopy(attrs)}

    def delete_item(self, Key):  # noqa NOSONAR
        self.items.pop(Key[self.key], None)

    def query(self, **kwargs):
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs["ExpressionAttributeValues"]
        expression = kwargs["KeyConditionExpression"]
        items = [it for it in self.items.values() if self._matches(it, expression, names, values)]
        return {"Items": copy.deepcopy(items)}

    def scan(self, **kwargs):
        expression = kwargs.get("FilterExpression")
        names = kwargs.get("ExpressionAttributeNames") or {}
        values = kwargs.get("ExpressionAttributeValues") or {}
        items = [
            it for it in self.items.values()
            if not expression or self._matches(it, expression, names, values)
        ]
        return {"Items": copy.deepcopy(items)}


@pytest.fixture(autouse=True)
def tables(monkeypatch):
    fakes = SimpleNamespace(
        bookings=FakeTable("booking_id"),
        resources=FakeTable("resource_id"),
        activity=FakeTable("activity_id"),
        series=FakeTable("series_id"),
        waitlist=FakeTable("entry_id"),
    )
    monkeypatch.setattr(dal, "_bookings", fakes.bookings)
    monkeypatch.setattr(dal, "_resources", fakes.resources)
    monkeypatch.setattr(dal, "_activity", fakes.activity)
    monkeypatch.setattr(recurring, "_table", fakes.series)
    monkeypatch.setattr(waitlist, "_table", fakes.waitlist)
    return fakes


@pytest.fixture()
def member() -> Identity:
    return Identity(user_id="u-member", email="member@example.com", role="member")


@pytest.fixture()
def other_member() -> Identity:
    return Identity(user_id="u-other", role="participant")


@pytest.fixture()
def tender() -> Identity:
    return Identity(user_id="u-tender", role=Role.TENDER)


@pytest.fixture()
def make_resource(tender: Identity):
    def _make(**overrides: Any) -> Resource:
        fields: dict[str, Any] = {
            "resource_id": "laser",
            "name": "Laser Cutter",
            "category": "fabrication",
            "max_concurrent": 1,
            "requires_approval": False,
        }
        fields.update(overrides)
        return dal.create_resource(ResourceCreate(**fields), tender)

    return _make
