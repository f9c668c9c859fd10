import unittest

from perplexity_cli.cli.commands import CommandRegistry


class CommandRegistryTests(unittest.TestCase):
    def test_register_and_lookup(self) -> None:
        registry = CommandRegistry()

        async def dummy_handler(args: list) -> bool:  # noqa: ARG001
            return True

        registry.register("resume", dummy_handler, "Resume a conversation", usage="<id>")

        self.assertIn("/resume", registry.names())
        command = registry.get("resume")
        self.assertIsNotNone(command)
        assert command  # for mypy/pylint
        self.assertEqual(command.handler, dummy_handler)
        self.assertEqual(command.signature, "/resume <id>")
        self.assertIsNone(registry.get("/missing"))

    def test_help_text_aligns_descriptions(self) -> None:
        registry = CommandRegistry()

        async def handler(args: list) -> bool:  # noqa: ARG001
            return True

        registry.register("/help", handler, "Show help")
        registry.register("/delete", handler, "Delete one", usage="<id>")

        lines = registry.help_text().splitlines()
        self.assertEqual(lines[0], "Available commands:")
        self.assertEqual(lines[1].index("Show help"), lines[2].index("Delete one"))
        self.assertTrue(lines[2].strip().startswith("/delete <id>"))


if __name__ == "__main__":
    unittest.main()
