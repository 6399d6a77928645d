"""Budget-aware, resumable Reader sync engine."""
