"""Tests for the customer linker (user -> processor customer mapping)."""

from unittest.mock import MagicMock, patch

import pytest
import stripe

from patronage.errors import ProcessorError, ProcessorUnavailable
from patronage.extensions import db
from patronage.models.customer import ExternalCustomer
from patronage.services import customer_service
from patronage.services.customer_service import ensure_customer


class TestEnsureCustomer:

    @patch("patronage.services.stripe_service.stripe.Customer.create")
    def test_creates_mapping_on_first_use(self, mock_create):
        mock_create.return_value = MagicMock(id="cus_new_1")

        customer_id = ensure_customer("user-1", email="fan@example.com")

        assert customer_id == "cus_new_1"
        row = ExternalCustomer.query.filter_by(user_id="user-1").one()
        assert row.processor_customer_id == "cus_new_1"
        kwargs = mock_create.call_args.kwargs
        assert kwargs["email"] == "fan@example.com"
        assert kwargs["idempotency_key"] == "customer-user-1"
        assert kwargs["metadata"] == {"user_id": "user-1"}

    @patch("patronage.services.stripe_service.stripe.Customer.create")
    def test_reuses_existing_mapping(self, mock_create):
        db.session.add(ExternalCustomer(user_id="user-1", processor_customer_id="cus_existing"))
        db.session.commit()

        assert ensure_customer("user-1") == "cus_existing"
        mock_create.assert_not_called()

    @patch("patronage.services.stripe_service.stripe.Customer.create")
    def test_concurrent_first_use_returns_winner(self, mock_create):
        """The loser of the unique-constraint race adopts the winner's row."""
        db.session.add(ExternalCustomer(user_id="user-1", processor_customer_id="cus_winner"))
        db.session.commit()
        mock_create.return_value = MagicMock(id="cus_loser")

        real_find = customer_service.find_customer
        calls = []

        def racing_find(user_id):
            # First lookup runs before the other request committed.
            calls.append(user_id)
            if len(calls) == 1:
                return None
            return real_find(user_id)

        with patch("patronage.services.customer_service.find_customer", side_effect=racing_find):
            customer_id = ensure_customer("user-1")

        assert customer_id == "cus_winner"
        assert ExternalCustomer.query.filter_by(user_id="user-1").count() == 1

    @patch("patronage.services.stripe_service.stripe.Customer.create")
    def test_processor_outage_is_retryable_and_writes_nothing(self, mock_create):
        mock_create.side_effect = stripe.APIConnectionError("network down")

        with pytest.raises(ProcessorUnavailable) as exc_info:
            ensure_customer("user-1")

        assert exc_info.value.retryable is True
        assert ExternalCustomer.query.count() == 0

    @patch("patronage.services.stripe_service.stripe.Customer.create")
    def test_processor_rejection_is_not_retryable(self, mock_create):
        mock_create.side_effect = stripe.InvalidRequestError("bad email", param="email")

        with pytest.raises(ProcessorError) as exc_info:
            ensure_customer("user-1", email="not-an-email")

        assert exc_info.value.retryable is False
        assert ExternalCustomer.query.count() == 0
