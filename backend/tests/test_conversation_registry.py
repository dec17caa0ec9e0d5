"""Tests for conversation resolution, summaries and unread counters."""

import asyncio

import pytest
from medchat.errors import NotFoundError, ValidationError
from medchat.realtime import participant_topic
from medchat.schemas.message import MessageContent
from medchat.services import ConversationRegistry, InMemoryProfileProvider
from medchat.services.conversation_registry import conversation_id_for, participant_key


class TestPairIdentity:
    """Test the order-independent pair key and id."""

    def test_key_ignores_order(self):
        assert participant_key("pat-9", "doc-1") == participant_key("doc-1", "pat-9")

    def test_id_is_deterministic_and_prefixed(self):
        cid = conversation_id_for("pat-9", "doc-1")
        assert cid == conversation_id_for("doc-1", "pat-9")
        assert cid.startswith("c-")
        assert cid != conversation_id_for("pat-2", "doc-1")

    def test_separator_characters_do_not_collide(self):
        """Test that ids containing punctuation cannot alias another pair."""
        assert participant_key("a|b", "c") != participant_key("a", "b|c")
        assert conversation_id_for("a|b", "c") != conversation_id_for("a", "b|c")
        assert participant_key("a,b", "c") != participant_key("a", "b,c")

    @pytest.mark.asyncio
    async def test_pairs_with_separator_ids_stay_distinct(self, feed, session_factory):
        registry = ConversationRegistry(feed, profiles=InMemoryProfileProvider(), session_factory=session_factory)

        first = await registry.resolve_conversation("a|b", "c")
        second = await registry.resolve_conversation("a", "b|c")

        assert first != second
        conversation = await registry.get_conversation(second)
        assert sorted(p.id for p in conversation.participants) == ["a", "b|c"]


class TestResolveConversation:
    """Test find-or-create of conversations."""

    @pytest.mark.asyncio
    async def test_first_contact_creates_conversation(self, registry, doctor, patient):
        """Test the doctor/patient first-contact scenario."""
        cid = await registry.resolve_conversation(patient.id, doctor.id)

        conversation = await registry.get_conversation(cid)
        assert [p.id for p in conversation.participants] == [patient.id, doctor.id]
        assert conversation.participants[1].display_name == "Dr. Amal Haddad"
        assert conversation.last_message is None
        assert all(p.unread_count == 0 for p in conversation.participants)
        assert conversation.message_count == 0

    @pytest.mark.asyncio
    async def test_same_id_either_order(self, registry, doctor, patient):
        first = await registry.resolve_conversation(patient.id, doctor.id)
        second = await registry.resolve_conversation(doctor.id, patient.id)
        assert first == second

    @pytest.mark.asyncio
    async def test_concurrent_resolution_creates_one(self, registry, doctor, patient):
        """Test that racing resolvers for one pair converge on one conversation."""
        ids = await asyncio.gather(*[
            registry.resolve_conversation(*((patient.id, doctor.id) if i % 2 else (doctor.id, patient.id)))
            for i in range(10)
        ])

        assert len(set(ids)) == 1
        assert len(await registry.list_conversations_for(doctor.id)) == 1

    @pytest.mark.asyncio
    async def test_same_participant_twice_rejected(self, registry, doctor):
        with pytest.raises(ValidationError):
            await registry.resolve_conversation(doctor.id, doctor.id)

    @pytest.mark.asyncio
    async def test_empty_participant_rejected(self, registry, doctor):
        with pytest.raises(ValidationError):
            await registry.resolve_conversation("", doctor.id)
        with pytest.raises(ValidationError):
            await registry.resolve_conversation(doctor.id, "   ")

    @pytest.mark.asyncio
    async def test_unknown_profile_rejected(self, registry, doctor):
        with pytest.raises(ValidationError):
            await registry.resolve_conversation("ghost", doctor.id)

    @pytest.mark.asyncio
    async def test_creation_notifies_both_participants(self, registry, feed, doctor, patient):
        doctor_queue = feed.subscribe(participant_topic(doctor.id))
        patient_queue = feed.subscribe(participant_topic(patient.id))

        cid = await registry.resolve_conversation(patient.id, doctor.id)

        assert (await doctor_queue.get()).data["conversation_id"] == cid
        assert (await patient_queue.get()).data["conversation_id"] == cid


class TestUnreadCounters:
    """Test summary and unread bookkeeping driven by appends."""

    @pytest.mark.asyncio
    async def test_append_updates_summary_and_recipient_unread(
        self, registry, channel, conversation_id, doctor, patient
    ):
        await channel.append(conversation_id, patient, MessageContent(kind="text", text="Hello doctor"))

        conversation = await registry.get_conversation(conversation_id)
        assert conversation.last_message.text == "Hello doctor"
        assert conversation.last_message.sender_id == patient.id
        assert conversation.unread_for(doctor.id) == 1
        assert conversation.unread_for(patient.id) == 0

    @pytest.mark.asyncio
    async def test_unread_counts_every_message(self, registry, channel, conversation_id, doctor, patient):
        for text in ("one", "two", "three"):
            await channel.append(conversation_id, patient, MessageContent(kind="text", text=text))

        conversation = await registry.get_conversation(conversation_id)
        assert conversation.unread_for(doctor.id) == 3
        assert conversation.last_message.text == "three"

    @pytest.mark.asyncio
    async def test_concurrent_appends_are_all_counted(self, registry, channel, conversation_id, doctor, patient):
        """Test that the increment does not lose updates under concurrency."""
        await asyncio.gather(*[
            channel.append(conversation_id, patient, MessageContent(kind="text", text=f"msg {i}"))
            for i in range(8)
        ])

        conversation = await registry.get_conversation(conversation_id)
        assert conversation.unread_for(doctor.id) == 8
        assert conversation.message_count == 8

    @pytest.mark.asyncio
    async def test_mark_read_resets_only_reader(self, registry, channel, conversation_id, doctor, patient):
        await channel.append(conversation_id, patient, MessageContent(kind="text", text="Hi"))
        await channel.append(conversation_id, doctor, MessageContent(kind="text", text="Hello"))

        await registry.mark_read(conversation_id, doctor.id)

        conversation = await registry.get_conversation(conversation_id)
        assert conversation.unread_for(doctor.id) == 0
        assert conversation.unread_for(patient.id) == 1

    @pytest.mark.asyncio
    async def test_mark_read_is_idempotent(self, registry, conversation_id, doctor):
        await registry.mark_read(conversation_id, doctor.id)
        await registry.mark_read(conversation_id, doctor.id)

        conversation = await registry.get_conversation(conversation_id)
        assert conversation.unread_for(doctor.id) == 0

    @pytest.mark.asyncio
    async def test_mark_read_unknown_conversation(self, registry, doctor):
        with pytest.raises(NotFoundError):
            await registry.mark_read("c-missing", doctor.id)

    @pytest.mark.asyncio
    async def test_mark_read_by_outsider(self, registry, conversation_id, other_patient):
        with pytest.raises(ValidationError):
            await registry.mark_read(conversation_id, other_patient.id)


class TestConversationList:
    """Test the per-user conversation list and its live feed."""

    @pytest.mark.asyncio
    async def test_list_is_most_recent_first(self, registry, channel, doctor, patient, other_patient):
        first = await registry.resolve_conversation(patient.id, doctor.id)
        second = await registry.resolve_conversation(other_patient.id, doctor.id)

        await channel.append(second, other_patient, MessageContent(kind="text", text="Earlier"))
        await channel.append(first, patient, MessageContent(kind="text", text="Later"))

        conversations = await registry.list_conversations_for(doctor.id)
        assert [c.id for c in conversations] == [first, second]
        assert conversations[0].unread_count == 1

        patient_view = await registry.list_conversations_for(patient.id)
        assert [c.id for c in patient_view] == [first]
        assert patient_view[0].unread_count == 0

    @pytest.mark.asyncio
    async def test_get_missing_conversation(self, registry):
        with pytest.raises(NotFoundError):
            await registry.get_conversation("c-missing")

    @pytest.mark.asyncio
    async def test_subscription_tracks_new_messages(
        self, registry, channel, conversation_id, collect, doctor, patient
    ):
        updates = collect()
        query = registry.subscribe_conversations_for(doctor.id, updates)

        initial = await updates.next()
        assert [c.id for c in initial] == [conversation_id]
        assert initial[0].unread_count == 0

        await channel.append(conversation_id, patient, MessageContent(kind="text", text="New lab results"))
        latest = await updates.until(lambda items: items and items[0].unread_count == 1)
        assert latest[0].last_message.text == "New lab results"

        await query.aclose()
