"""roomchat: real-time room chat backend."""
