"""WhatsApp SDR campaign orchestration engine."""
