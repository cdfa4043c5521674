"""资源匹配算法库，作为匹配领域服务的纯计算底座。"""
