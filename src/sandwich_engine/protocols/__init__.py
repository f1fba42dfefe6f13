"""Protocol contracts, AMM math and token safety vetting."""
