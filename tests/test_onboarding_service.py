"""
Tests for OnboardingService: payload validation, mailbox connection and
retry of transient store failures.
"""

from unittest.mock import AsyncMock, patch

import pytest

from onboarding import steps
from onboarding.schemas import CategoriesUpdate, ProgressSnapshot
from utils.errors import (
    InvalidState,
    InvalidStepPayload,
    ReauthorizationRequired,
    StepOutOfOrder,
    StoreUnavailable,
)


@pytest.fixture
def service(services):
    return services.onboarding


async def _start(service, user_id):
    await service.complete_step(user_id, steps.WELCOME, {"accepted_terms": True})
    return await service.complete_step(
        user_id, steps.BUSINESS_TYPE, {"business_type_id": 1, "business_name": "  Blue Lagoon Spas "}
    )


class TestPayloadValidation:
    @pytest.mark.asyncio
    async def test_business_type_payload(self, service, user_id):
        status = await _start(service, user_id)
        assert status.business_type_id == 1
        assert status.settings[steps.BUSINESS_TYPE]["business_name"] == "Blue Lagoon Spas"
        assert status.next_step == steps.EMAIL_PROVIDER

    @pytest.mark.asyncio
    async def test_unknown_fields_rejected(self, service, user_id):
        with pytest.raises(InvalidStepPayload):
            await service.complete_step(user_id, steps.WELCOME, {"accepted_terms": True, "admin": True})

    @pytest.mark.asyncio
    async def test_review_requires_every_confirmation(self, service, user_id):
        with pytest.raises(InvalidStepPayload, match="notifications_confirmed"):
            await service.complete_step(
                user_id,
                steps.REVIEW,
                {
                    "business_info_confirmed": True,
                    "email_connection_confirmed": True,
                    "label_mappings_confirmed": True,
                    "notifications_confirmed": False,
                },
            )

    @pytest.mark.asyncio
    async def test_label_mapping_requires_mappings(self, service, user_id):
        with pytest.raises(InvalidStepPayload):
            await service.complete_step(user_id, steps.LABEL_MAPPING, {"label_mappings": []})

    @pytest.mark.asyncio
    async def test_categories_update(self, service, user_id):
        await _start(service, user_id)
        status = await service.update_categories(
            user_id, CategoriesUpdate(categories=[{"name": "Leads", "description": "New enquiries"}])
        )
        assert status.settings["categories"] == [{"name": "Leads", "description": "New enquiries"}]


class TestMailboxConnection:
    @pytest.mark.asyncio
    async def test_callback_advances_wizard(self, service, user_id):
        await _start(service, user_id)
        request = await service.begin_provider_connection(user_id, "google")

        owner, status = await service.complete_provider_connection("code-9", request.state, "google")
        assert owner == user_id
        assert status.email_provider_connected
        assert status.connected_providers == ["google"]
        assert status.next_step == steps.LABEL_MAPPING
        assert status.settings[steps.EMAIL_PROVIDER]["provider"] == "google"

    @pytest.mark.asyncio
    async def test_callback_clears_deferred_mailbox_step(self, service, user_id):
        await _start(service, user_id)
        await service.skip_step(user_id, steps.EMAIL_PROVIDER)
        request = await service.begin_provider_connection(user_id, "google")
        _, status = await service.complete_provider_connection("code-9", request.state)
        assert status.skipped_steps == []

    @pytest.mark.asyncio
    async def test_invalid_state_leaves_progress_untouched(self, service, user_id):
        await _start(service, user_id)
        with pytest.raises(InvalidState):
            await service.complete_provider_connection("code-9", "forged")
        status = await service.get_onboarding_status(user_id)
        assert not status.email_provider_connected
        assert status.next_step == steps.EMAIL_PROVIDER

    @pytest.mark.asyncio
    async def test_disconnect(self, service, user_id):
        await _start(service, user_id)
        request = await service.begin_provider_connection(user_id, "google")
        await service.complete_provider_connection("code-9", request.state)

        status = await service.disconnect_provider(user_id, "google")
        assert status.connected_providers == []
        assert status.next_step == steps.EMAIL_PROVIDER

    @pytest.mark.asyncio
    async def test_label_mapping_before_mailbox(self, service, user_id):
        await _start(service, user_id)
        with pytest.raises(StepOutOfOrder):
            await service.complete_step(
                user_id, steps.LABEL_MAPPING, {"label_mappings": [{"category": "Sales", "label": "Sales"}]}
            )


    @pytest.mark.asyncio
    async def test_labels_default_to_connected_mailbox(self, service, user_id):
        request = await service.begin_provider_connection(user_id, "google")
        await service.complete_provider_connection("code-9", request.state)

        provider, labels = await service.list_mailbox_labels(user_id)
        assert provider == "google"
        assert [label.name for label in labels] == ["INBOX", "Sales"]

    @pytest.mark.asyncio
    async def test_labels_need_a_mailbox(self, service, user_id):
        with pytest.raises(ReauthorizationRequired):
            await service.list_mailbox_labels(user_id)

class TestRetries:
    @pytest.mark.asyncio
    async def test_transient_store_failure_is_retried(self, service, user_id):
        snapshot = ProgressSnapshot(user_id=str(user_id), next_step=steps.WELCOME)
        flaky = AsyncMock(side_effect=[StoreUnavailable("connection reset"), snapshot])
        with patch.object(service.tracker, "get_progress", flaky):
            status = await service.get_onboarding_status(user_id)
        assert status.next_step == steps.WELCOME
        assert flaky.await_count == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self, service, user_id):
        failing = AsyncMock(side_effect=StepOutOfOrder("nope"))
        with patch.object(service.tracker, "record_step_completion", failing):
            with pytest.raises(StepOutOfOrder):
                await service.complete_step(user_id, steps.WELCOME, {})
        assert failing.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, service, user_id):
        failing = AsyncMock(side_effect=StoreUnavailable("down"))
        with patch.object(service.tracker, "get_progress", failing):
            with pytest.raises(StoreUnavailable):
                await service.get_onboarding_status(user_id)
        assert failing.await_count == 3
