"""DevPulse Engine - repository analysis and autonomous fix backend."""
