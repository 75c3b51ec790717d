"""
Unit tests for Prompt Manager

Tests guidance loading, category definitions and request rendering.
"""

import json
import tempfile
import unittest
from pathlib import Path

from src.synthesis.prompt_manager import SYSTEM_PROMPT, PromptManager
from src.synthesis.schema import SynthesisFragment, SynthesisGuidance, SynthesisRequest


class TestPromptManager(unittest.TestCase):
    """Test PromptManager functionality"""

    def setUp(self):
        """Set up test prompt manager"""
        self.pm = PromptManager()

    def test_load_primary_guidance(self):
        """Test loading the packaged guidance text"""
        prompt = self.pm.load_prompt('primary_guidance.txt')

        self.assertIsInstance(prompt, str)
        self.assertIn('knowledge unit', prompt.lower())
        self.assertIn('excluded_fragments', prompt)

    def test_load_prompt_caching(self):
        """Test prompt is cached after first load"""
        prompt1 = self.pm.load_prompt('fragment_weighting.txt')
        prompt2 = self.pm.load_prompt('fragment_weighting.txt')

        self.assertIs(prompt1, prompt2)  # Same object (cached)

    def test_load_nonexistent_prompt(self):
        """Test loading nonexistent prompt raises FileNotFoundError"""
        with self.assertRaises(FileNotFoundError) as ctx:
            self.pm.load_prompt('nonexistent_prompt.txt')

        self.assertIn('not found', str(ctx.exception))

    def test_load_categories(self):
        """Test packaged category definitions"""
        categories = self.pm.load_categories()
        names = [c.name for c in categories]

        self.assertIn('Process', names)
        self.assertIn('FAQ', names)
        self.assertTrue(all(c.guidance for c in categories))

    def test_build_guidance(self):
        """Test guidance combines texts and categories"""
        guidance = self.pm.build_guidance(organization_context="Internal IT helpdesk")

        self.assertEqual(guidance.organization_context, "Internal IT helpdesk")
        self.assertIn('Known Issue', guidance.category_names)
        self.assertIn('organization_context', guidance.to_dict())

    def test_system_prompt(self):
        self.assertIn('knowledge clustering assistant', SYSTEM_PROMPT)

    def test_format_request_uses_integer_ids(self):
        """Rendered request shows aliases, never real fragment ids"""
        request = SynthesisRequest(
            cluster_id="cluster-1",
            guidance=SynthesisGuidance(primary_guidance="Merge", fragment_weighting="Prefer recent"),
            fragments=[
                SynthesisFragment(id="frag-secret-1", title="A", content="first"),
                SynthesisFragment(id="frag-secret-2", title="B", content="second"),
            ],
        )

        prompt = self.pm.format_request(request, {"frag-secret-1": 1, "frag-secret-2": 2})
        payload = json.loads(prompt)

        self.assertNotIn('frag-secret', prompt)
        self.assertEqual([f['id'] for f in payload['fragments']], [1, 2])
        self.assertEqual(payload['instructions']['primary_guidance'], "Merge")
        self.assertEqual(payload['response_limits']['title'], 75)

    def test_prompt_stats(self):
        stats = self.pm.get_prompt_stats("one two three four")

        self.assertEqual(stats['word_count'], 4)
        self.assertEqual(stats['char_count'], 18)
        self.assertEqual(stats['estimated_tokens'], 4)


class TestCustomPromptDir(unittest.TestCase):
    """Test prompt directories outside the package"""

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.prompt_dir = Path(self.tmp.name)
        (self.prompt_dir / 'primary_guidance.txt').write_text("Custom guidance\n")
        (self.prompt_dir / 'fragment_weighting.txt').write_text("Custom weighting\n")

    def tearDown(self):
        self.tmp.cleanup()

    def test_missing_categories_means_no_restriction(self):
        pm = PromptManager(prompt_dir=str(self.prompt_dir))
        guidance = pm.build_guidance()

        self.assertEqual(guidance.primary_guidance, "Custom guidance")
        self.assertEqual(guidance.category_names, [])

    def test_malformed_categories(self):
        (self.prompt_dir / 'categories.yaml').write_text("categories: not-a-list\n")
        pm = PromptManager(prompt_dir=str(self.prompt_dir))

        with self.assertRaises(ValueError):
            pm.load_categories()

    def test_category_without_name(self):
        (self.prompt_dir / 'categories.yaml').write_text("categories:\n  - guidance: orphan\n")
        pm = PromptManager(prompt_dir=str(self.prompt_dir))

        with self.assertRaises(ValueError):
            pm.load_categories()


if __name__ == '__main__':
    unittest.main()
