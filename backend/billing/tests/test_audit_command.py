from dataclasses import replace
from io import StringIO
from unittest import mock

import pytest
from django.core.management import CommandError, call_command

from billing.management.commands.audit_billing_invariants import audit_subscription


def test_clean_ledger_passes(store, lifecycle, seed_subscription):
    seed_subscription("tenant-1")
    seed_subscription("tenant-2")
    lifecycle.change_plan("tenant-1", "business", idempotency_key="upgrade-1")
    out = StringIO()

    call_command("audit_billing_invariants", store=store, stdout=out)

    assert "Audited 2 subscription(s); no violations." in out.getvalue()


def test_mismatched_billing_key_is_reported(store, seed_subscription):
    subscription = seed_subscription()
    with store.atomic() as uow:
        uow.save_subscription(replace(subscription, billing_key="bk_stale"), subscription.version)
    err = StringIO()

    with pytest.raises(CommandError) as exc:
        call_command("audit_billing_invariants", store=store, stderr=err)

    assert "1 billing invariant violation" in str(exc.value)
    assert "cached billing key" in err.getvalue()


def test_over_refunded_charge_is_reported(store, seed_subscription):
    subscription = seed_subscription()
    source = store.latest_refundable_charge("tenant-1")
    with mock.patch.object(store, "list_payments", return_value=[replace(source, refunded_amount=40000)]):
        problems = audit_subscription(store, subscription)

    assert problems == ["tenant-1: payment FIRST_1_tenant-1 refunded 40000 of 39000"]


def test_unknown_tenant_is_an_error(store, seed_subscription):
    seed_subscription()

    with pytest.raises(CommandError):
        call_command("audit_billing_invariants", "--tenant-id", "ghost", store=store)
