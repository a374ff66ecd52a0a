"""External services: mailboxes, classifier service, notifications."""
