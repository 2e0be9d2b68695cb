"""
投递通道层：websocket / email / sms。

业务层只通过 factory.get_channel_adapters() 拿到 {channel: adapter}，
不知道背后是 Redis、SMTP 还是 Twilio。
"""
