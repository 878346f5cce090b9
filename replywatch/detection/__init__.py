"""Reply detection: independent layers, per-provider registry and quorum."""
