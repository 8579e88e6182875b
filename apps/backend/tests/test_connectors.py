import asyncio
import sys
import unittest
from pathlib import Path

import httpx

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from drip_engine.automation.errors import ChannelError
from drip_engine.config import Settings
from drip_engine.connectors import close_channel_layer, create_channel_layer
from drip_engine.connectors.sendgrid import SendGridConnector
from drip_engine.connectors.twilio import TwilioConnector
from drip_engine.simulator import FailureConfig, FailureRule, SimulatedEmailSender, SimulatedSmsSender


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class SendGridConnectorTests(unittest.TestCase):
    def test_send_email_posts_mail_send_payload(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(202)

        async def scenario():
            async with _client(handler) as client:
                connector = SendGridConnector("SG.key", "leasing@nexus.app", client)
                return await connector.send_email("john.smith@example.com", "Welcome", "<b>Hi</b>")

        self.assertTrue(asyncio.run(scenario()))
        request = seen[0]
        self.assertEqual(str(request.url), "https://api.sendgrid.com/v3/mail/send")
        self.assertEqual(request.headers["Authorization"], "Bearer SG.key")
        self.assertIn(b'"john.smith@example.com"', request.content)
        self.assertIn(b'"leasing@nexus.app"', request.content)

    def test_rate_limit_maps_to_channel_error(self):
        async def scenario():
            async with _client(lambda request: httpx.Response(429)) as client:
                connector = SendGridConnector("SG.key", "leasing@nexus.app", client)
                await connector.send_email("john.smith@example.com", "Welcome", "Hi")

        with self.assertRaises(ChannelError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(ctx.exception.error_type, "rate_limit")


class TwilioConnectorTests(unittest.TestCase):
    def test_send_sms_posts_form_with_basic_auth(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"sid": "SM123"})

        async def scenario():
            async with _client(handler) as client:
                connector = TwilioConnector("AC1", "secret", "+15550001111", client)
                return await connector.send_sms("+15550100", "Hi John")

        self.assertTrue(asyncio.run(scenario()))
        request = seen[0]
        self.assertEqual(str(request.url), "https://api.twilio.com/2010-04-01/Accounts/AC1/Messages.json")
        self.assertTrue(request.headers["Authorization"].startswith("Basic "))
        self.assertIn(b"Body=Hi+John", request.content)

    def test_rejected_credentials(self):
        async def scenario():
            async with _client(lambda request: httpx.Response(401)) as client:
                await TwilioConnector("AC1", "bad", "+15550001111", client).send_sms("+15550100", "Hi")

        with self.assertRaises(ChannelError) as ctx:
            asyncio.run(scenario())
        self.assertEqual(ctx.exception.error_type, "permission_denied")


class ChannelLayerTests(unittest.TestCase):
    def test_simulator_mode_uses_simulated_channels(self):
        _, _, channels, _ = create_channel_layer(Settings(connector_mode="simulator"))
        self.assertIsInstance(channels["email"], SimulatedEmailSender)
        self.assertIsInstance(channels["sms"], SimulatedSmsSender)
        self.assertNotIn("_http_client", channels)

    def test_hybrid_mode_uses_configured_connectors_only(self):
        settings = Settings(
            connector_mode="hybrid",
            sendgrid_api_key="SG.key",
            sendgrid_from_email="leasing@nexus.app",
            twilio_account_sid=None,
            twilio_auth_token=None,
            twilio_from_number=None,
        )
        _, _, channels, _ = create_channel_layer(settings)
        self.assertIsInstance(channels["email"], SendGridConnector)
        self.assertIsInstance(channels["sms"], SimulatedSmsSender)

        http_client = channels["_http_client"]
        asyncio.run(close_channel_layer(channels))
        self.assertTrue(http_client.is_closed)
        self.assertNotIn("_http_client", channels)

    def test_simulated_channel_failure_injection(self):
        failures = FailureConfig(
            rules={"sms.send": FailureRule(error_type="invalid_recipient", message="Bad number", max_failures=1)}
        )
        state, _, channels, _ = create_channel_layer(Settings(connector_mode="simulator"), failures)

        with self.assertRaises(ChannelError):
            asyncio.run(channels["sms"].send_sms("5550100", "Hi"))
        self.assertTrue(asyncio.run(channels["sms"].send_sms("5550100", "Hi again")))
        self.assertEqual([m.status for m in state.outbox], ["failed", "sent"])


if __name__ == "__main__":
    unittest.main()
