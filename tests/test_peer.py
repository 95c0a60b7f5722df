from __future__ import annotations

import asyncio

from couch_remote.peer import AiortcConnector


def test_candidates_wait_for_remote_description():
    async def scenario():
        connector = AiortcConnector(stun_servers=[])

        await connector.add_ice_candidate({"candidate": ""})
        await connector.add_ice_candidate({
            "candidate": "candidate:1 1 udp 2122260223 192.168.1.5 54321 typ host",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        })

        assert len(connector._pending) == 1
        assert connector.is_open is False
        assert await connector.send_json({"type": "ping"}) is False

        await connector.close()
        assert connector._pending == []

    asyncio.run(scenario())


def test_reset_does_not_report_channel_loss():
    async def scenario():
        closed = []
        connector = AiortcConnector(stun_servers=[])
        connector.on_close = lambda: closed.append(True)

        await connector.create_offer()
        await connector.reset()

        assert closed == []
        assert connector.is_open is False

    asyncio.run(scenario())
