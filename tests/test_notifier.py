"""Tests for Notifier — log batching, chunking, offline queue, retry, lifecycle."""

from unittest.mock import AsyncMock, MagicMock, patch

from replyfleet.bot.notifier import MAX_MESSAGE_LEN, Notifier, chunk_lines
from replyfleet.db.models import LogEntry


def _make_config(batch_window_s=0):
    """Create a mock config with controllable batch_window_s."""
    cfg = MagicMock()
    cfg.batch_window_s = batch_window_s
    return cfg


def _make_bot(message_id=42):
    """Create a mock aiogram.Bot whose send_message returns a message with message_id."""
    bot = AsyncMock()
    msg = MagicMock()
    msg.message_id = message_id
    bot.send_message.return_value = msg
    bot.get_me.return_value = MagicMock()
    return bot


CHAT_ID = 123456


class TestChunkLines:
    def test_joins_short_lines(self):
        assert chunk_lines(["a", "b", "c"]) == ["a\nb\nc"]

    def test_splits_at_limit(self):
        chunks = chunk_lines(["x" * 6, "y" * 6, "z" * 6], limit=13)
        assert chunks == ["x" * 6 + "\n" + "y" * 6, "z" * 6]

    def test_overlong_line_is_truncated(self):
        chunks = chunk_lines(["x" * (MAX_MESSAGE_LEN + 50)])
        assert len(chunks) == 1
        assert len(chunks[0]) == MAX_MESSAGE_LEN

    def test_empty(self):
        assert chunk_lines([]) == []


class TestSendImmediate:
    """send_immediate bypasses the batch buffer and sends directly."""

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=5))
    async def test_send_immediate_bypasses_batch(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        result = await notifier.send_immediate("urgent message")
        assert result == 42
        bot.send_message.assert_awaited_once()
        assert len(notifier._batch_buffer) == 0

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_send_immediate_with_disable_notification(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        await notifier.send_immediate("silent", disable_notification=True)
        assert bot.send_message.call_args.kwargs.get("disable_notification") is True

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_parse_mode_is_html(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        await notifier.send_immediate("<b>x</b>")
        assert bot.send_message.call_args.kwargs["parse_mode"] == "HTML"


class TestPush:
    """push() is a log store listener: it only buffers."""

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=2))
    async def test_push_buffers_formatted_entry(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        notifier.push(LogEntry(message="Replied to <alice>", severity="success", session_id="s1"))
        assert len(notifier._batch_buffer) == 1
        assert "✅" in notifier._batch_buffer[0]
        assert "&lt;alice&gt;" in notifier._batch_buffer[0]
        bot.send_message.assert_not_called()


class TestFlushBatch:
    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=2))
    async def test_flush_combines_entries_silently(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        for i in range(3):
            notifier.push(LogEntry(message=f"entry {i}", session_id="s1"))
        await notifier._flush_batch()
        bot.send_message.assert_awaited_once()
        text = bot.send_message.call_args.args[1]
        assert "entry 0" in text and "entry 2" in text
        assert bot.send_message.call_args.kwargs["disable_notification"] is True
        assert notifier._batch_buffer == []

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=2))
    async def test_flush_splits_long_batches(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        for _ in range(3):
            notifier.push(LogEntry(message="x" * 2500, session_id="s1"))
        await notifier._flush_batch()
        assert bot.send_message.await_count == 3

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=2))
    async def test_flush_empty_buffer_is_noop(self, _mock_cfg):
        bot = _make_bot()
        await Notifier(bot, CHAT_ID)._flush_batch()
        bot.send_message.assert_not_awaited()


class TestOfflineQueueAndRetry:
    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_send_failure_queues_message(self, _mock_cfg):
        bot = _make_bot()
        bot.send_message.side_effect = Exception("Network error")
        notifier = Notifier(bot, CHAT_ID)
        result = await notifier.send_immediate("test")
        assert result is None
        assert notifier.is_online is False
        assert notifier._queue.qsize() == 1

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_rate_limit_backs_off_and_retries(self, _mock_cfg):
        bot = _make_bot()
        bot.send_message.side_effect = [Exception("Telegram 429: Too Many Requests"), bot.send_message.return_value]
        notifier = Notifier(bot, CHAT_ID)
        with patch("replyfleet.bot.notifier.asyncio.sleep", new=AsyncMock()) as sleep:
            result = await notifier.send_immediate("hi")
        assert result == 42
        sleep.assert_awaited_once_with(1.0)
        assert notifier.is_online is True

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_successful_send_sets_online(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        notifier.is_online = False
        await notifier.send_immediate("msg")
        assert notifier.is_online is True

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_offline_queue_flushed_on_success(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        await notifier._queue.put(("queued msg", 1))
        await notifier.send_immediate("new msg")
        assert notifier._queue.qsize() == 0
        # 1 for direct send + 1 for queued message = 2
        assert bot.send_message.await_count == 2

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_message_discarded_after_max_retries(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        await notifier._queue.put(("doomed msg", 5))
        bot.send_message.side_effect = Exception("Still broken")
        await notifier._flush_offline_queue()
        assert notifier._queue.qsize() == 0

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_message_requeued_under_max_retries(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        await notifier._queue.put(("retry msg", 3))
        bot.send_message.side_effect = Exception("Temporary failure")
        await notifier._flush_offline_queue()
        assert notifier._queue.qsize() == 1
        _, retries = await notifier._queue.get()
        assert retries == 4


class TestConnectivityCheck:
    @staticmethod
    def _stop_after_one(notifier):
        async def sleep(seconds):
            notifier._running = False

        return sleep

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_connectivity_check_calls_get_me_when_offline(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        notifier._running = True
        notifier.is_online = False
        with patch("replyfleet.bot.notifier.asyncio.sleep", side_effect=self._stop_after_one(notifier)):
            await notifier.connectivity_check()
        bot.get_me.assert_awaited_once()
        assert notifier.is_online is True

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_connectivity_check_skips_when_online(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        notifier._running = True
        with patch("replyfleet.bot.notifier.asyncio.sleep", side_effect=self._stop_after_one(notifier)):
            await notifier.connectivity_check()
        bot.get_me.assert_not_awaited()

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config())
    async def test_connectivity_check_handles_get_me_failure(self, _mock_cfg):
        bot = _make_bot()
        bot.get_me.side_effect = Exception("Still offline")
        notifier = Notifier(bot, CHAT_ID)
        notifier._running = True
        notifier.is_online = False
        with patch("replyfleet.bot.notifier.asyncio.sleep", side_effect=self._stop_after_one(notifier)):
            await notifier.connectivity_check()
        assert notifier.is_online is False


class TestStartStopLifecycle:
    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=1))
    async def test_start_sets_running_and_creates_task(self, _mock_cfg):
        notifier = Notifier(_make_bot(), CHAT_ID)
        assert notifier._batch_task is None
        await notifier.start()
        assert notifier._running is True
        assert notifier._batch_task is not None
        await notifier.stop()

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=1))
    async def test_stop_cancels_task_and_flushes(self, _mock_cfg):
        bot = _make_bot()
        notifier = Notifier(bot, CHAT_ID)
        await notifier.start()
        notifier.push(LogEntry(message="pending", session_id="s1"))
        await notifier.stop()
        assert notifier._running is False
        assert notifier._batch_buffer == []
        bot.send_message.assert_awaited()

    @patch("replyfleet.bot.notifier.get_config", return_value=_make_config(batch_window_s=1))
    async def test_stop_without_start_is_safe(self, _mock_cfg):
        notifier = Notifier(_make_bot(), CHAT_ID)
        await notifier.stop()
        assert notifier._running is False
