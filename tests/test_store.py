import asyncio
import json
import tempfile
import unittest
from pathlib import Path

from perplexity_cli.core.models import Source
from perplexity_cli.core.store import (
    ConversationNotFoundError,
    ConversationStore,
    CorruptConversationError,
    InvalidConversationIdError,
    StoreError,
    truncate_title,
)


class ConversationStoreTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.base = Path(self._tmp.name) / "conversations"
        self.store = ConversationStore(self.base)

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    async def test_ensure_directory_creates_empty_index_once(self) -> None:
        await self.store.ensure_directory()
        self.assertEqual(json.loads((self.base / "index.json").read_text()), [])

        conversation = await self.store.create("First")
        await self.store.ensure_directory()

        index = json.loads((self.base / "index.json").read_text())
        self.assertEqual([item["id"] for item in index], [conversation.id])

    async def test_create_shape_and_file(self) -> None:
        await self.store.ensure_directory()
        conversation = await self.store.create("Hello world")

        self.assertEqual(len(conversation.id), 10)
        self.assertRegex(conversation.id, r"^[A-Za-z0-9_-]{10}$")
        self.assertEqual(conversation.title, "Hello world")
        self.assertEqual(conversation.messages, [])
        data = json.loads((self.base / f"{conversation.id}.json").read_text())
        self.assertEqual(data["title"], "Hello world")
        self.assertIn("createdAt", data)
        self.assertIn("updatedAt", data)

    def test_title_truncated_with_ellipsis(self) -> None:
        title = truncate_title("a" * 100)
        self.assertEqual(len(title), 60)
        self.assertTrue(title.endswith("…"))
        self.assertEqual(truncate_title("short"), "short")

    async def test_save_round_trips_messages_and_sources(self) -> None:
        await self.store.ensure_directory()
        conversation = await self.store.create("Test")
        self.store.add_message(conversation, "user", "hello")
        self.store.add_message(conversation, "assistant", "see [1]", [Source("T", "https://t")])
        await self.store.save(conversation)

        loaded = await self.store.load(conversation.id)

        self.assertEqual([m.content for m in loaded.messages], ["hello", "see [1]"])
        self.assertEqual(loaded.messages[1].sources, [Source("T", "https://t")])
        self.assertEqual(loaded.updated_at, conversation.updated_at)

    async def test_add_message_does_not_write(self) -> None:
        await self.store.ensure_directory()
        conversation = await self.store.create("Test")
        self.store.add_message(conversation, "user", "unsaved")

        loaded = await self.store.load(conversation.id)

        self.assertEqual(loaded.messages, [])

    async def test_save_bumps_updated_at_and_index(self) -> None:
        await self.store.ensure_directory()
        conversation = await self.store.create("Test")
        before = conversation.updated_at
        await asyncio.sleep(0.01)

        await self.store.save(conversation)

        self.assertNotEqual(conversation.updated_at, before)
        summaries = await self.store.list_summaries()
        self.assertEqual(summaries[0].updated_at, conversation.updated_at)

    async def test_summaries_sorted_newest_first(self) -> None:
        await self.store.ensure_directory()
        first = await self.store.create("first")
        second = await self.store.create("second")
        await self.store.save(first)

        summaries = await self.store.list_summaries()

        self.assertEqual([s.id for s in summaries], [first.id, second.id])
        last = await self.store.get_last_updated()
        assert last is not None
        self.assertEqual(last.id, first.id)

    async def test_empty_store_helpers(self) -> None:
        await self.store.ensure_directory()

        self.assertFalse(await self.store.has_conversations())
        self.assertIsNone(await self.store.get_last_updated())

    async def test_invalid_ids_are_rejected(self) -> None:
        for bad in ("../etc/passwd", "/etc/passwd", "..\\etc", "", "a b"):
            with self.subTest(bad=bad):
                with self.assertRaises(InvalidConversationIdError) as ctx:
                    await self.store.load(bad)
                self.assertIn("Invalid conversation id", str(ctx.exception))

    async def test_missing_and_corrupt_conversations(self) -> None:
        await self.store.ensure_directory()
        with self.assertRaises(ConversationNotFoundError):
            await self.store.load("nonexistent")

        conversation = await self.store.create("Test")
        (self.base / f"{conversation.id}.json").write_text("not valid json")
        with self.assertRaises(CorruptConversationError):
            await self.store.load(conversation.id)

        (self.base / f"{conversation.id}.json").write_text(json.dumps({"id": conversation.id}))
        with self.assertRaises(StoreError):
            await self.store.load(conversation.id)

    async def test_corrupt_index_reads_as_empty(self) -> None:
        await self.store.ensure_directory()
        (self.base / "index.json").write_text("{broken")

        self.assertEqual(await self.store.list_summaries(), [])

    async def test_delete_removes_file_and_index_entry(self) -> None:
        await self.store.ensure_directory()
        keep = await self.store.create("keep")
        drop = await self.store.create("drop")

        await self.store.delete(drop.id)

        self.assertFalse((self.base / f"{drop.id}.json").exists())
        self.assertEqual([s.id for s in await self.store.list_summaries()], [keep.id])
        with self.assertRaises(ConversationNotFoundError):
            await self.store.delete(drop.id)

    async def test_delete_stale_index_entry(self) -> None:
        await self.store.ensure_directory()
        conversation = await self.store.create("stale")
        (self.base / f"{conversation.id}.json").unlink()

        await self.store.delete(conversation.id)

        self.assertEqual(await self.store.list_summaries(), [])

    async def test_concurrent_saves_keep_every_index_entry(self) -> None:
        await self.store.ensure_directory()
        conversations = [await self.store.create(f"c{i}") for i in range(10)]

        await asyncio.gather(*(self.store.save(c) for c in conversations))

        ids = {s.id for s in await self.store.list_summaries()}
        self.assertEqual(ids, {c.id for c in conversations})


if __name__ == "__main__":
    unittest.main()
