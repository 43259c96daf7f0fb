# mqtt_test_server/broker/topics.py


def match_topic(filt: str, topic: str) -> bool:
    """
    MQTT-style match: '+' matches one level, '#' matches all remaining levels.
    """
    f_parts = filt.split('/')
    t_parts = topic.split('/')

    for i, fp in enumerate(f_parts):
        if fp == '#':
            return True
        if i >= len(t_parts):
            return False
        if fp == '+':
            continue
        if fp != t_parts[i]:
            return False

    # only match if filter and topic have same number of levels
    return len(t_parts) == len(f_parts)
