"""Cross-cutting helpers shared by every layer of the client."""

SERVICE_NAME = "pubsub-cli"
