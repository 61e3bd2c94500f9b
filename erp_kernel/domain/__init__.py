"""Pure domain core: costing arithmetic, value objects and the clock."""
