import unittest

from starlette.requests import Request

from voiceqa.access import is_allowed, resolve_client_ip


def make_request(headers=None, client=("192.0.2.10", 52000)):
    raw_headers = [
        (name.lower().encode("latin-1"), value.encode("latin-1"))
        for name, value in (headers or {}).items()
    ]
    return Request({"type": "http", "headers": raw_headers, "client": client})


class ResolveClientIpTests(unittest.TestCase):
    def test_prefers_first_forwarded_hop(self):
        request = make_request({"X-Forwarded-For": "203.0.113.5, 10.0.0.1"})
        self.assertEqual(resolve_client_ip(request), "203.0.113.5")

    def test_falls_back_to_peer(self):
        self.assertEqual(resolve_client_ip(make_request()), "192.0.2.10")

    def test_no_client(self):
        self.assertEqual(resolve_client_ip(make_request(client=None)), "")


class IsAllowedTests(unittest.TestCase):
    def test_exact_match(self):
        self.assertTrue(is_allowed("203.0.113.7", ["203.0.113.7"]))
        self.assertFalse(is_allowed("203.0.113.8", ["203.0.113.7"]))

    def test_network_match(self):
        self.assertTrue(is_allowed("10.20.30.40", ["10.0.0.0/8"]))
        self.assertFalse(is_allowed("11.0.0.1", ["10.0.0.0/8"]))

    def test_ipv4_mapped_ipv6(self):
        self.assertTrue(is_allowed("::ffff:10.0.0.1", ["10.0.0.0/8"]))

    def test_ignores_bad_entries(self):
        self.assertFalse(is_allowed("10.0.0.1", ["not-an-ip", ""]))
        self.assertFalse(is_allowed("garbage", ["10.0.0.0/8"]))

    def test_empty_allow_list(self):
        self.assertFalse(is_allowed("127.0.0.1", []))


if __name__ == "__main__":
    unittest.main()
