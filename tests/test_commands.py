import unittest


class TestParseCommand(unittest.TestCase):
    def test_bare_commands(self) -> None:
        from threadrelay.ports.chat.commands import CommandType, parse_command

        self.assertEqual(parse_command("!stop").type, CommandType.STOP)
        self.assertEqual(parse_command("  !KILL ").type, CommandType.KILL)
        self.assertEqual(parse_command("!escape").type, CommandType.ESCAPE)
        self.assertEqual(parse_command("!help").type, CommandType.HELP)
        self.assertEqual(parse_command("!stats").type, CommandType.STATS)
        self.assertEqual(parse_command("!cost").type, CommandType.STATS)
        self.assertEqual(parse_command("!compact").type, CommandType.COMPACT)

    def test_cd_takes_a_path(self) -> None:
        from threadrelay.ports.chat.commands import CommandType, parse_command

        p = parse_command("!cd ~/src/my app")
        self.assertEqual(p.type, CommandType.CD)
        self.assertEqual(p.text, "~/src/my app")
        self.assertEqual(parse_command("!cd").type, CommandType.MESSAGE)

    def test_permissions_mode_is_optional_and_checked(self) -> None:
        from threadrelay.ports.chat.commands import CommandType, parse_command

        bare = parse_command("!permissions")
        self.assertEqual((bare.type, bare.text), (CommandType.PERMISSIONS, ""))
        auto = parse_command("!permissions AUTO")
        self.assertEqual((auto.type, auto.text, auto.args), (CommandType.PERMISSIONS, "auto", ["auto"]))
        self.assertEqual(parse_command("!permissions interactive").text, "interactive")
        self.assertEqual(parse_command("!permissions please").type, CommandType.MESSAGE)

    def test_everything_else_is_a_message(self) -> None:
        from threadrelay.ports.chat.commands import CommandType, parse_command

        for text in ("hello", "!unknown", "!stop the server please", "say !stop", ""):
            p = parse_command(text)
            self.assertEqual(p.type, CommandType.MESSAGE, text)
        self.assertEqual(parse_command("  hi there ").text, "hi there")

    def test_help_lists_commands(self) -> None:
        from threadrelay.ports.chat.commands import format_help

        text = format_help()
        for cmd in ("!stop", "!escape", "!kill", "!stats", "!cd", "!permissions", "!help"):
            self.assertIn(cmd, text)


if __name__ == "__main__":
    unittest.main()
