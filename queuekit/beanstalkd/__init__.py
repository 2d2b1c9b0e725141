"""Delayed jobs written to several beanstalkd servers and consumed once, guarded by Redis."""