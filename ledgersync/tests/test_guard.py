import pytest

from ledgersync.app.billing import (
    BillingData,
    BillingPreconditionError,
    BillingSyncService,
    LocalUser,
    Transaction,
    TransactionBillingData,
    check_start_transaction,
    check_stop_transaction,
    check_user_deletion,
)
from ledgersync.config import BillingSyncConfig, FeatureToggles


def _user(customer_id=None, *, with_billing_data=True) -> LocalUser:
    return LocalUser(
        user_id="alice",
        tenant_id="tenant-1",
        email="alice@example.com",
        billing_data=BillingData(customer_id=customer_id) if with_billing_data else None,
    )


def _transaction(**overrides) -> Transaction:
    values = {
        "id": "tx-1",
        "tenant_id": "tenant-1",
        "user_id": "alice",
        "user": _user("cus_alice"),
        "charge_box_id": "cb-1",
    }
    values.update(overrides)
    return Transaction(**values)


def test_start_accepts_user_with_customer():
    check_start_transaction(_transaction())


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"user": None}, "billing_user_missing"),
        ({"user_id": None}, "billing_user_missing"),
        ({"user": _user(None)}, "billing_customer_missing"),
        ({"user": _user(with_billing_data=False)}, "billing_customer_missing"),
    ],
)
def test_start_rejects_uncharged_identity(overrides, code):
    with pytest.raises(BillingPreconditionError) as exc_info:
        check_start_transaction(_transaction(**overrides))

    assert exc_info.value.code == code
    assert exc_info.value.payload["transaction_id"] == "tx-1"


def test_stop_accepts_transaction_without_invoice():
    check_stop_transaction(_transaction(billing_data=TransactionBillingData()))


@pytest.mark.parametrize(
    ("overrides", "code"),
    [
        ({"user": None}, "billing_user_missing"),
        ({"charge_box_id": None}, "billing_charge_box_missing"),
        ({"billing_data": TransactionBillingData(invoice_id="in_1")}, "billing_already_invoiced"),
        ({"user": _user(with_billing_data=False)}, "billing_data_missing"),
    ],
)
def test_stop_rejects_incomplete_or_invoiced_transaction(overrides, code):
    with pytest.raises(BillingPreconditionError) as exc_info:
        check_stop_transaction(_transaction(**overrides))

    assert exc_info.value.code == code


def test_user_deletion_is_prevented_for_customers():
    with pytest.raises(BillingPreconditionError):
        check_user_deletion(_user("cus_alice"), prevent_customer_deletion=True)

    check_user_deletion(_user("cus_alice"), prevent_customer_deletion=False)
    check_user_deletion(_user(None), prevent_customer_deletion=True)


def test_service_deletes_customer_when_allowed(repository, provider, tenant_id):
    service = BillingSyncService(
        repository=repository,
        provider=provider,
        config=BillingSyncConfig(feature_toggles=FeatureToggles(prevent_customer_deletion=False)),
    )

    service.delete_user(tenant_id, _user("cus_alice"))

    assert provider.deleted == ["alice"]


def test_service_keeps_customer_when_deletion_prevented(repository, provider, tenant_id):
    service = BillingSyncService(repository=repository, provider=provider)

    with pytest.raises(BillingPreconditionError):
        service.delete_user(tenant_id, _user("cus_alice"))

    assert provider.deleted == []


def test_lazy_start_resolves_customer_first(repository, provider, make_user, tenant_id):
    user = make_user("alice")
    service = BillingSyncService(
        repository=repository,
        provider=provider,
        config=BillingSyncConfig(feature_toggles=FeatureToggles(sync_users=False)),
    )

    transaction = service.check_start_transaction(_transaction(user=user))

    assert transaction.user.customer_id == "cus_1"
    assert repository.get_user(tenant_id, "alice").customer_id == "cus_1"


def test_eager_start_does_not_contact_provider(repository, provider, make_user):
    user = make_user("alice")
    service = BillingSyncService(repository=repository, provider=provider)

    with pytest.raises(BillingPreconditionError):
        service.check_start_transaction(_transaction(user=user))

    assert provider.created == []
