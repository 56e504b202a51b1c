"""Mock objects standing in for capture processes and devices."""
