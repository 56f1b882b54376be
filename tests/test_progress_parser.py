import unittest

from warpsync.progress_parser import (RsyncOutputParser, RsyncStats, parse_itemized_line, parse_progress_line,
                                      parse_size, parse_speed, parse_stats_line)


class TestProgressLine(unittest.TestCase):

    def test_full_progress_line(self):
        """A progress2-style line yields bytes, percent, speed, eta and file counts."""
        update = parse_progress_line("      1,234,567  78%   12.34MB/s    0:00:05 (xfr#3, to-chk=12/40)")
        self.assertIsNotNone(update)
        self.assertEqual(update.percentage, 78)
        self.assertEqual(update.bytes_transferred, 1234567)
        self.assertEqual(update.speed, "12.34MB/s")
        self.assertAlmostEqual(update.speed_bps, 12.34 * 1024 * 1024)
        self.assertEqual(update.eta, "0:00:05")
        self.assertEqual(update.total_files, 40)
        self.assertEqual(update.file_number, 28)

    def test_incremental_recursion_check(self):
        """ir-chk counts are accepted like to-chk."""
        update = parse_progress_line("  32,768 100%  1.00MB/s  0:00:00 (xfr#1, ir-chk=1000/1002)")
        self.assertEqual(update.percentage, 100)
        self.assertEqual(update.total_files, 1002)
        self.assertEqual(update.file_number, 2)

    def test_human_readable_sizes(self):
        update = parse_progress_line("        577.83M  45%   25.43MB/s    0:00:30")
        self.assertEqual(update.bytes_transferred, int(577.83 * 1024 ** 2))
        self.assertEqual(update.eta, "0:00:30")

    def test_non_progress_lines(self):
        for line in ("sending incremental file list", "", "movie.mkv", "total size is 1,024  speedup is 1.00"):
            self.assertIsNone(parse_progress_line(line), line)

    def test_size_and_speed_helpers(self):
        self.assertEqual(parse_size("1,024"), 1024)
        self.assertEqual(parse_size("2K"), 2048)
        self.assertEqual(parse_size("garbage"), 0)
        self.assertEqual(parse_speed("1.5kB/s"), 1536.0)
        self.assertEqual(parse_speed("100B/s"), 100.0)


class TestItemizeAndStats(unittest.TestCase):

    def test_itemized_lines(self):
        self.assertEqual(parse_itemized_line(">f+++++++++ Season 1/episode 01.mkv"), "Season 1/episode 01.mkv")
        self.assertEqual(parse_itemized_line("cd+++++++++ Season 1/"), "Season 1/")
        self.assertEqual(parse_itemized_line(">f.st...... notes.txt"), "notes.txt")
        self.assertIsNone(parse_itemized_line("sent 100 bytes  received 35 bytes  270.00 bytes/sec"))

    def test_stats_block(self):
        """The --stats summary and the sent/received line fill RsyncStats."""
        stats = RsyncStats()
        lines = [
            "Number of files: 3 (reg: 2, dir: 1)",
            "Number of created files: 2 (reg: 2)",
            "Number of regular files transferred: 2",
            "Total file size: 2,097,152 bytes",
            "Total transferred file size: 1,048,576 bytes",
            "Literal data: 1,048,576 bytes",
            "Matched data: 0 bytes",
            "File list size: 120",
            "Total bytes sent: 1,049,000",
            "Total bytes received: 58",
            "sent 1,049,000 bytes  received 58 bytes  699,372.00 bytes/sec",
        ]
        for line in lines:
            self.assertTrue(parse_stats_line(line, stats), line)
        self.assertEqual(stats.total_files, 3)
        self.assertEqual(stats.created_files, 2)
        self.assertEqual(stats.regular_files_transferred, 2)
        self.assertEqual(stats.total_size, 2097152)
        self.assertEqual(stats.transferred_size, 1048576)
        self.assertEqual(stats.literal_data, 1048576)
        self.assertEqual(stats.file_list_size, 120)
        self.assertEqual(stats.bytes_sent, 1049000)
        self.assertEqual(stats.bytes_received, 58)
        self.assertEqual(stats.transfer_rate, 699372.0)


class TestRsyncOutputParser(unittest.TestCase):

    def test_carriage_return_redraws(self):
        """Progress redrawn with \\r produces one snapshot per redraw."""
        parser = RsyncOutputParser()
        updates = parser.feed(b"  1,000  10%  1.00kB/s  0:00:09\r  5,000  50%  1.00kB/s  0:00:05\r")
        self.assertEqual([u.percentage for u in updates], [10, 50])
        self.assertEqual(parser.current.bytes_transferred, 5000)

    def test_partial_lines_are_buffered(self):
        parser = RsyncOutputParser()
        self.assertEqual(parser.feed("  2,000  2"), [])
        updates = parser.feed("0%  1.00kB/s  0:00:08\n")
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0].percentage, 20)

    def test_current_file_and_file_count(self):
        parser = RsyncOutputParser()
        updates = parser.feed("12 files to consider\n>f+++++++++ a/b.bin\n")
        self.assertEqual(updates[0].total_files, 12)
        self.assertEqual(updates[-1].filename, "a/b.bin")
        self.assertEqual(parser.current.total_files, 12)

    def test_finish_flushes_remainder(self):
        parser = RsyncOutputParser()
        parser.feed("  9,999 100%  2.00kB/s  0:00:00 (xfr#1, to-chk=0/1)")
        updates = parser.finish()
        self.assertEqual(len(updates), 1)
        self.assertEqual(updates[0].percentage, 100)
        self.assertEqual(updates[0].file_number, 1)

    def test_stats_lines_do_not_emit_progress(self):
        parser = RsyncOutputParser()
        self.assertEqual(parser.feed("Number of files: 1\nTotal file size: 10 bytes\n"), [])
        self.assertEqual(parser.stats.total_files, 1)
        self.assertEqual(parser.stats.total_size, 10)


if __name__ == '__main__':
    unittest.main()
