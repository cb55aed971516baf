"""LINE official account console - webhook processing, menus, drip and broadcast messaging."""
