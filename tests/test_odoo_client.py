import unittest
from unittest.mock import MagicMock, patch

import requests

from ap_bill_ocr.errors import OdooRPCError, TransientError
from ap_bill_ocr.odoo_client import OdooClient, kw_with_company, normalize_base_url


def rpc_response(result=None, error=None, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.text = "upstream error"
    body = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    response.json.return_value = body
    return response


class TestOdooClient(unittest.TestCase):
    """Odoo JSON-RPC クライアントのテスト"""

    def setUp(self):
        self.client = OdooClient("https://erp.example.com/", "demo", "bot@example.com", "secret", max_retries=3)
        self.client.session = MagicMock()

    def test_base_url_is_normalized(self):
        self.assertEqual(self.client.base_url, "https://erp.example.com")
        self.assertEqual(self.client.endpoint, "https://erp.example.com/jsonrpc")
        self.assertEqual(normalize_base_url("  https://x.odoo.com// "), "https://x.odoo.com")

    def test_company_context(self):
        kwargs = kw_with_company(3, limit=5)
        self.assertEqual(kwargs["limit"], 5)
        self.assertEqual(kwargs["context"]["allowed_company_ids"], [3])
        self.assertEqual(kwargs["context"]["force_company"], 3)
        self.assertNotIn("context", kw_with_company(None))

    def test_search_read_authenticates_once(self):
        self.client.session.post.side_effect = [
            rpc_response(7),
            rpc_response([{"id": 1}]),
            rpc_response([{"id": 2}]),
        ]

        first = self.client.search_read("res.partner", [["id", "=", 1]], ["id"], company_id=2, limit=1)
        second = self.client.search_read("res.partner", [["id", "=", 2]], ["id"])

        self.assertEqual(first, [{"id": 1}])
        self.assertEqual(second, [{"id": 2}])
        self.assertEqual(self.client.uid, 7)
        self.assertEqual(self.client.session.post.call_count, 3)

        payload = self.client.session.post.call_args_list[1].kwargs["json"]
        db, uid, password, model, method, args, kw = payload["params"]["args"]
        self.assertEqual((db, uid, model, method), ("demo", 7, "res.partner", "search_read"))
        self.assertEqual(args, [[["id", "=", 1]], ["id"]])
        self.assertEqual(kw["limit"], 1)
        self.assertEqual(kw["context"]["allowed_company_ids"], [2])

    def test_authentication_failure(self):
        self.client.session.post.return_value = rpc_response(False)
        with self.assertRaises(OdooRPCError):
            self.client.authenticate()

    def test_rpc_error_message(self):
        self.client.uid = 7
        self.client.session.post.return_value = rpc_response(
            error={"message": "Odoo Server Error", "data": {"message": "Invalid field 'foo'"}}
        )
        with self.assertRaises(OdooRPCError) as context:
            self.client.write("account.move", [1], {"foo": 1})
        self.assertIn("Invalid field 'foo'", str(context.exception))

    @patch("ap_bill_ocr.odoo_client.time.sleep")
    def test_retries_server_errors_then_succeeds(self, mock_sleep):
        self.client.uid = 7
        self.client.session.post.side_effect = [
            rpc_response(status_code=503),
            requests.ReadTimeout("read timed out"),
            rpc_response([42]),
        ]

        self.assertEqual(self.client.search("account.move", []), [42])
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1, 2])

    @patch("ap_bill_ocr.odoo_client.time.sleep")
    def test_gives_up_with_transient_error(self, mock_sleep):
        self.client.uid = 7
        self.client.session.post.return_value = rpc_response(status_code=429)

        with self.assertRaises(TransientError) as context:
            self.client.search("res.partner", [])

        self.assertEqual(context.exception.status_code, 429)
        self.assertEqual(self.client.session.post.call_count, 3)
        self.assertEqual(mock_sleep.call_count, 2)

    @patch("ap_bill_ocr.odoo_client.time.sleep")
    def test_create_is_not_resent_after_read_timeout(self, mock_sleep):
        self.client.uid = 7
        self.client.session.post.side_effect = [
            requests.ReadTimeout("read timed out"),
            rpc_response(77),
        ]

        with self.assertRaises(TransientError):
            self.client.create("account.move", {"move_type": "in_invoice"})

        methods = [c.kwargs["json"]["params"]["args"][4] for c in self.client.session.post.call_args_list]
        self.assertEqual(methods, ["create"])
        mock_sleep.assert_not_called()

    @patch("ap_bill_ocr.odoo_client.time.sleep")
    def test_create_is_not_resent_after_server_error(self, mock_sleep):
        self.client.uid = 7
        self.client.session.post.side_effect = [rpc_response(status_code=504), rpc_response(77)]

        with self.assertRaises(TransientError) as context:
            self.client.create("account.move", {"move_type": "in_invoice"})

        self.assertEqual(context.exception.status_code, 504)
        self.assertEqual(self.client.session.post.call_count, 1)

    @patch("ap_bill_ocr.odoo_client.time.sleep")
    def test_create_retries_when_request_was_not_sent(self, mock_sleep):
        self.client.uid = 7
        self.client.session.post.side_effect = [
            requests.ConnectTimeout("connect timed out"),
            requests.ConnectionError("connection refused"),
            rpc_response(77),
        ]

        self.assertEqual(self.client.create("account.move", {"move_type": "in_invoice"}), 77)
        self.assertEqual(self.client.session.post.call_count, 3)
        self.assertEqual([c.args[0] for c in mock_sleep.call_args_list], [1, 2])

    @patch("ap_bill_ocr.odoo_client.time.sleep")
    def test_message_post_is_not_resent(self, mock_sleep):
        self.client.uid = 7
        self.client.session.post.side_effect = [rpc_response(status_code=502), rpc_response(99)]

        with self.assertRaises(TransientError):
            self.client.message_post("account.move", 5, "hi")
        self.assertEqual(self.client.session.post.call_count, 1)

    def test_client_errors_are_not_retried(self):
        self.client.uid = 7
        response = rpc_response(status_code=404)
        response.raise_for_status.side_effect = requests.HTTPError("404 Not Found")
        self.client.session.post.return_value = response

        with self.assertRaises(requests.HTTPError):
            self.client.search("res.partner", [])
        self.assertEqual(self.client.session.post.call_count, 1)

    def test_message_post_defaults(self):
        self.client.uid = 7
        self.client.session.post.return_value = rpc_response(99)

        self.client.message_post("account.move", 5, "<b>hi</b>", company_id=1, subtype_xmlid="mail.mt_note")

        kw = self.client.session.post.call_args.kwargs["json"]["params"]["args"][6]
        self.assertEqual(kw["body"], "<b>hi</b>")
        self.assertEqual(kw["message_type"], "comment")
        self.assertEqual(kw["subtype_xmlid"], "mail.mt_note")


if __name__ == "__main__":
    unittest.main()
