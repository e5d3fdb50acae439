from datetime import datetime

from payflow import repository
from payflow.dispatcher import PostPaymentDispatcher
from payflow.models import Collaboration, ExperienceBooking, Membership


def approved_transaction(db, payment_type, **meta):
    transaction = repository.create_pending_transaction(
        db,
        payer_id="u1",
        amount=8999,
        currency="ARS",
        external_payment_id=f"pref_{payment_type}",
        external_reference=f"{payment_type}_u1_1",
        description="Test payment",
        meta={"payment_type": payment_type, **meta},
        provider_payment_id="pay_77",
    )
    transaction.status = "approved"
    db.commit()
    return transaction


def test_membership_upsert_keeps_one_row_per_user(db):
    dispatcher = PostPaymentDispatcher()
    db.add(Membership(user_id="u1", tier="basic", status="expired", price=2999,
                      start_date=datetime(2020, 1, 1),
                      end_date=datetime(2020, 1, 31)))
    db.commit()

    transaction = approved_transaction(db, "membership", membership_tier="premium", billing_period="monthly")
    assert dispatcher.dispatch(db, transaction) == 0

    memberships = db.query(Membership).all()
    assert len(memberships) == 1
    assert memberships[0].tier == "premium"
    assert memberships[0].status == "active"
    assert memberships[0].price == 8999
    assert memberships[0].external_subscription_id == "pay_77"


def test_collaboration_missing_row_is_not_an_error(db):
    transaction = approved_transaction(db, "collaboration", collaboration_id="col-404")

    assert PostPaymentDispatcher().dispatch(db, transaction) == 0
    assert db.get(Collaboration, "col-404") is None


def test_custom_experience_handler_is_used(db, mocker):
    confirm = mocker.Mock()
    transaction = approved_transaction(db, "experience", experience_id="exp-1", participant_count=3)

    assert PostPaymentDispatcher(confirm_experience=confirm).dispatch(db, transaction) == 0

    confirm.assert_called_once()
    _, called_transaction, details = confirm.call_args.args
    assert called_transaction.id == transaction.id
    assert details.experience_id == "exp-1"
    assert details.participant_count == 3
    assert db.query(ExperienceBooking).count() == 0


def test_campaign_deposit_has_no_side_effects(db):
    transaction = approved_transaction(db, "campaign_deposit", campaign_id="camp-1", deposit_type="milestone")

    assert PostPaymentDispatcher().dispatch(db, transaction) == 0


def test_failing_handler_does_not_stop_the_others(db, mocker):
    dispatcher = PostPaymentDispatcher()
    broken = mocker.Mock(side_effect=RuntimeError("downstream unavailable"))
    follow_up = mocker.Mock()
    dispatcher.handlers["membership"] = [broken, follow_up]
    transaction = approved_transaction(db, "membership", membership_tier="vip")

    assert dispatcher.dispatch(db, transaction) == 1
    follow_up.assert_called_once()


def test_register_adds_a_handler(db, mocker):
    dispatcher = PostPaymentDispatcher()
    extra = mocker.Mock()
    dispatcher.register("campaign_deposit", extra)
    transaction = approved_transaction(db, "campaign_deposit", campaign_id="camp-1")

    dispatcher.dispatch(db, transaction)

    extra.assert_called_once()


def test_unreadable_metadata_is_reported(db):
    transaction = approved_transaction(db, "membership")   # no tier

    assert PostPaymentDispatcher().dispatch(db, transaction) == 1
    assert db.query(Membership).count() == 0
