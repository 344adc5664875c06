# mailgate: Status API package
