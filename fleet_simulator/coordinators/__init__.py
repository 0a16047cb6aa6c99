"""Fleet, device agent and run timer coordination."""
