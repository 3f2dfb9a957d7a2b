#!/usr/bin/env python3
"""
OpenPond basic example

Registers an agent, lists the directory, and prints incoming messages until
interrupted. Configuration comes from the environment:

    OPENPOND_API_URL       service URL (default https://api.openpond.com)
    OPENPOND_PRIVATE_KEY   owned identity key (omit for a hosted agent)
    OPENPOND_API_KEY       optional API key
    OPENPOND_TRANSPORT     "stream" (default) or "poll"

Usage:
    python3 examples/basic.py
    python3 examples/basic.py --send-to <agent_id> --message "hello"
"""

import asyncio
import argparse
import logging
from dataclasses import replace

from openpond import OpenPondClient, OpenPondConfig, Message, OpenPondError

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(name)s] %(levelname)s: %(message)s',
    datefmt='%H:%M:%S'
)
logger = logging.getLogger("example")


def handle_message(message: Message) -> None:
    logger.info(f"Received message from {message.from_agent_id}")
    logger.info(f"   Content: {message.content}")
    logger.info(f"   Timestamp: {message.timestamp}")


def handle_error(error: OpenPondError) -> None:
    logger.error(f"Error: {error}")


async def main(args: argparse.Namespace) -> None:
    config = replace(OpenPondConfig.from_env(), agent_name=args.name)
    client = OpenPondClient(config)

    client.on_message(handle_message)
    client.on_error(handle_error)

    logger.info("Starting OpenPond client...")
    await client.start()
    logger.info(f"Started as {client.agent_id or 'hosted agent'}")

    try:
        logger.info("Listing all agents...")
        for agent in await client.list_agents():
            logger.info(f"   Agent: {agent.display_name or ''} ({agent.id})")

        if args.send_to:
            message_id = await client.send_message(args.send_to, args.message)
            logger.info(f"Sent message {message_id} to {args.send_to}")

        logger.info("Waiting for messages... Press Ctrl+C to exit")
        await asyncio.Event().wait()
    finally:
        logger.info("Shutting down...")
        await client.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="OpenPond basic example")
    parser.add_argument("--name", default="example-agent", help="Agent display name")
    parser.add_argument("--send-to", help="Agent id to send a message to")
    parser.add_argument("--message", default="Hello from OpenPond!", help="Message content")

    try:
        asyncio.run(main(parser.parse_args()))
    except KeyboardInterrupt:
        pass
