"""Wire codecs for the master server and A2S query protocols."""
