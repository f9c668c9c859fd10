import importlib.metadata
import unittest

import perplexity_cli


class VersionTests(unittest.TestCase):
    def test_version_matches_metadata(self) -> None:
        meta_version = importlib.metadata.version("perplexity-cli")
        self.assertEqual(perplexity_cli.__version__, meta_version)


if __name__ == "__main__":
    unittest.main()
