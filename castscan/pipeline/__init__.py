"""Analysis run orchestration over an external detection source."""
