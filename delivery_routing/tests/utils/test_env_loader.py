import os
import tempfile
import unittest

from delivery_routing.utils.env_loader import env_float, env_int, load_env_from_file


class TestEnvLoader(unittest.TestCase):

    def setUp(self):
        self.original_environ = os.environ.copy()
        self.temp_dir = tempfile.TemporaryDirectory()
        self.env_file = os.path.join(self.temp_dir.name, ".env.test")

    def tearDown(self):
        os.environ.clear()
        os.environ.update(self.original_environ)
        self.temp_dir.cleanup()

    def write(self, content):
        with open(self.env_file, 'w') as f:
            f.write(content)

    def test_missing_file(self):
        self.assertFalse(load_env_from_file(os.path.join(self.temp_dir.name, "nope.env")))

    def test_loads_values_and_skips_noise(self):
        self.write('# comment\n\nROUTING_TEST_A=one\nROUTING_TEST_B="two"\nnot a pair\n')
        self.assertTrue(load_env_from_file(self.env_file))
        self.assertEqual(os.environ['ROUTING_TEST_A'], 'one')
        self.assertEqual(os.environ['ROUTING_TEST_B'], 'two')

    def test_existing_values_are_kept_unless_override(self):
        os.environ['ROUTING_TEST_A'] = 'original'
        self.write('ROUTING_TEST_A=replaced\n')
        load_env_from_file(self.env_file)
        self.assertEqual(os.environ['ROUTING_TEST_A'], 'original')
        load_env_from_file(self.env_file, override=True)
        self.assertEqual(os.environ['ROUTING_TEST_A'], 'replaced')

    def test_typed_readers(self):
        os.environ['ROUTING_TEST_FLOAT'] = '2.5'
        os.environ['ROUTING_TEST_INT'] = 'seven'
        self.assertEqual(env_float('ROUTING_TEST_FLOAT', 1.0), 2.5)
        self.assertEqual(env_float('ROUTING_TEST_UNSET', 1.0), 1.0)
        with self.assertLogs('delivery_routing.utils.env_loader', level='WARNING'):
            self.assertEqual(env_int('ROUTING_TEST_INT', 3), 3)
