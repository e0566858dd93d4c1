"""auris: home audio capture dashboard with cached waveform previews."""
