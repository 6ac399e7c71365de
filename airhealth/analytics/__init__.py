"""Rolling averages, indoor adjustment and scoring."""
