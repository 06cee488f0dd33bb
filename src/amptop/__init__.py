"""amptop: battery statistics and background history logging."""
