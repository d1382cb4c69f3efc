"""homewire - personal command gateway for a home server over Signal."""
