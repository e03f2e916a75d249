import os
import sys
import unittest
from unittest import mock


def _import_validator_module():
    web_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
    if web_dir not in sys.path:
        sys.path.insert(0, web_dir)
    from services import nginx_validator  # type: ignore
    return nginx_validator


class TestStructuralValidation(unittest.TestCase):

    def setUp(self):
        self.v = _import_validator_module()

    def test_missing_closing_brace_is_invalid(self):
        r = self.v.validate_config("http { server { } ", native=False)
        self.assertFalse(r.valid)
        self.assertEqual([f.code for f in r.errors], ['unbalanced'])
        self.assertEqual(r.errors[0].tier, 'structural')

    def test_balanced_is_valid(self):
        r = self.v.validate_config("http { server { } }", native=False)
        self.assertTrue(r.valid)
        self.assertEqual(r.errors, [])
        self.assertEqual(r.summary(), 'Configuration appears valid')

    def test_extra_closing_brace_reports_line(self):
        r = self.v.validate_config("events {\n}\n}\n", native=False)
        self.assertFalse(r.valid)
        self.assertEqual(r.errors[0].line, 3)

    def test_braces_in_comments_and_strings_are_ignored(self):
        text = (
            "# not a block {\n"
            "http {\n"
            "    log_format x '{ $remote_addr }';\n"
            "    map $host $v { default 0; \"~^a{2}$\" 1; }\n"
            "}\n"
        )
        r = self.v.validate_config(text, native=False)
        self.assertTrue(r.valid, r.summary())

    def test_unterminated_string(self):
        r = self.v.validate_config('http { return 403 "oops; }', native=False)
        self.assertFalse(r.valid)
        self.assertEqual(r.errors[0].code, 'unterminated_string')

    def test_quote_inside_a_word_is_literal(self):
        r = self.v.validate_config("http {\n    server {\n        return 200 don't;\n    }\n}\n", native=False)
        self.assertTrue(r.valid, r.findings)

    def test_backslash_escapes_next_character_outside_quotes(self):
        r = self.v.validate_config("http {\n    server {\n        return 200 brace\\};\n    }\n}\n", native=False)
        self.assertTrue(r.valid, r.findings)
        r = self.v.validate_config('http { server { return 200 \\"open; } }', native=False)
        self.assertTrue(r.valid, r.findings)

    def test_unescaped_brace_in_word_still_counts(self):
        r = self.v.validate_config("http {\n    server {\n        return 200 brace};\n    }\n}\n", native=False)
        self.assertFalse(r.valid)
        self.assertEqual(r.errors[0].code, 'unbalanced')

    def test_summary_names_tier(self):
        r = self.v.validate_config("http {", native=False)
        self.assertIn('[structural]', r.summary())
        self.assertFalse(r.to_dict()['valid'])


class TestSemanticValidation(unittest.TestCase):

    def setUp(self):
        self.v = _import_validator_module()

    def test_duplicate_group_names_are_warnings(self):
        text = (
            "http {\n"
            "    # group: Office\n"
            "    geo $remote_addr $wl_a_member { default 0; 10.0.0.1 1; }\n"
            "    # group: Office\n"
            "    geo $remote_addr $wl_b_member { default 0; 10.0.0.2 1; }\n"
            "}\n"
        )
        r = self.v.validate_config(text, native=False)
        self.assertTrue(r.valid)
        self.assertIn('duplicate_group_name', [f.code for f in r.warnings])

    def test_duplicate_variables_and_empty_sets(self):
        text = (
            "http {\n"
            "    # group: Lab\n"
            "    geo $remote_addr $wl_lab_member { default 0; }\n"
            "    map $host $wl_lab_dest_allowed { default 0; }\n"
            "    map $host $wl_lab_dest_allowed { default 0; ~^x$ 1; }\n"
            "}\n"
        )
        r = self.v.validate_config(text, native=False)
        codes = [f.code for f in r.warnings]
        self.assertIn('empty_address_set', codes)
        self.assertIn('empty_url_set', codes)
        self.assertIn('duplicate_group_variable', codes)
        self.assertTrue(r.valid)
        self.assertTrue(any("Lab" in f.message for f in r.warnings))


class TestNativeValidation(unittest.TestCase):

    def setUp(self):
        self.v = _import_validator_module()

    def test_native_rejection_is_an_error(self):
        done = mock.Mock(returncode=1, stdout='', stderr='nginx: [emerg] unknown directive "foo"')
        with mock.patch.object(self.v, 'run', return_value=done) as run:
            r = self.v.validate_config("foo bar;", native=True)
        self.assertFalse(r.valid)
        self.assertEqual(r.errors[0].tier, 'native')
        self.assertIn('unknown directive', r.errors[0].message)
        args = run.call_args[0][0]
        self.assertEqual(args[1:4], ['-t', '-q', '-c'])

    def test_missing_binary_is_only_a_warning(self):
        with mock.patch.object(self.v, 'run', side_effect=FileNotFoundError()):
            r = self.v.validate_config("events { }", native=True)
        self.assertTrue(r.valid)
        self.assertEqual(r.warnings[0].code, 'native_unavailable')

    def test_native_tier_follows_env(self):
        with mock.patch.dict(os.environ, {'NGINX_NATIVE_VALIDATE': '0'}):
            with mock.patch.object(self.v, 'run') as run:
                self.v.validate_config("events { }")
        run.assert_not_called()

    def test_structural_failure_skips_native(self):
        with mock.patch.object(self.v, 'run') as run:
            r = self.v.validate_config("events {", native=True)
        self.assertFalse(r.valid)
        run.assert_not_called()


if __name__ == '__main__':
    unittest.main()
