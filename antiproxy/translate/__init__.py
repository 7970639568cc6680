"""Translation between the client protocol and backend-native shapes."""
